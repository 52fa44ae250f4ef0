import asyncio
from pathlib import Path

import pytest

from trunkdev.watch import (
    EventKind,
    FsEvent,
    WatchSystem,
    build_error_reason,
    is_blacklisted,
)
from trunkdev.ws import BuildState, StateWatch


class Counter:
    def __init__(self, error=None, gate=None):
        self.count = 0
        self.error = error
        self.gate = gate

    async def __call__(self):
        self.count += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error


async def wait_until(cond, timeout=5.0):
    loop = asyncio.get_running_loop()
    end = loop.time() + timeout
    while not cond():
        if loop.time() > end:
            return False
        await asyncio.sleep(0.01)
    return True


@pytest.fixture
def root(tmp_path):
    root = tmp_path.resolve()
    (root / "src").mkdir()
    (root / "src" / "main.rs").write_text("fn main() {}")
    (root / "dist").mkdir()
    (root / "dist" / "index.html").write_text("<html></html>")
    (root / ".git").mkdir()
    (root / ".git" / "config").write_text("")
    return root


def test_blacklisted_segments():
    assert is_blacklisted(Path("/project/.git/config"))
    assert is_blacklisted("assets/.DS_Store")
    assert not is_blacklisted("/project/src/main.rs")


def test_error_reason_without_cause():
    assert build_error_reason(ValueError("boom")) == "boom\n\n"


def test_error_reason_with_chain():
    try:
        try:
            raise ValueError("inner")
        except ValueError as inner:
            raise RuntimeError("outer") from inner
    except RuntimeError as err:
        reason = build_error_reason(err)
    assert reason == "outer\n\nCaused by:\n\t0: inner\n"


@pytest.mark.parametrize(
    "kind, expected",
    [
        (EventKind.CREATE, True),
        (EventKind.MODIFY_METADATA_WRITE_TIME, True),
        (EventKind.ACCESS, False),
        (EventKind.MODIFY_METADATA_OTHER, False),
    ],
)
def test_event_kind_relevance(root, kind, expected):
    system = WatchSystem(Counter())
    assert kind.triggers_build == expected
    assert system.is_event_relevant(FsEvent.of(kind, root / "src" / "main.rs")) == expected


def test_relevant_events(root):
    system = WatchSystem(Counter(), ignored_paths=[root / "dist"])
    main = root / "src" / "main.rs"
    assert system.is_event_relevant(FsEvent.of(EventKind.CREATE, main))
    assert not system.is_event_relevant(FsEvent.of(EventKind.ACCESS, main))
    assert not system.is_event_relevant(FsEvent.of(EventKind.CREATE, root / "gone.txt"))
    assert not system.is_event_relevant(
        FsEvent.of(EventKind.MODIFY_DATA, root / "dist" / "index.html")
    )
    assert not system.is_event_relevant(FsEvent.of(EventKind.MODIFY_DATA, root / ".git" / "config"))
    assert system.is_event_relevant(
        FsEvent.of(EventKind.MODIFY_NAME, root / "dist" / "index.html", main)
    )


def test_update_ignore_list(root):
    system = WatchSystem(Counter())
    system.update_ignore_list(root / "dist")
    system.update_ignore_list(root / "dist")
    system.update_ignore_list(root / "missing")
    assert system.ignored_paths == [root / "dist", root / "missing"]
    assert not system.is_event_relevant(
        FsEvent.of(EventKind.CREATE, root / "dist" / "index.html")
    )


def test_missing_watch_path(tmp_path):
    with pytest.raises(FileNotFoundError):
        WatchSystem(Counter(), [tmp_path / "missing"])


@pytest.mark.asyncio
async def test_build_method_raises():
    system = WatchSystem(Counter(error=RuntimeError("nope")))
    with pytest.raises(RuntimeError, match="nope"):
        await system.build()


@pytest.mark.asyncio
async def test_change_triggers_build_and_reports_ok(root):
    build = Counter()
    state = StateWatch(BuildState("old"))
    system = WatchSystem(build, enable_cooldown=False, ws_state=state)
    task = asyncio.ensure_future(system.run())
    await asyncio.sleep(0)
    await asyncio.sleep(0.01)
    await system.handle_watch_event(FsEvent.of(EventKind.MODIFY_DATA, root / "src" / "main.rs"))
    assert await wait_until(lambda: state.get().ok)
    system.shutdown()
    await task
    assert build.count == 1


@pytest.mark.asyncio
async def test_failure_is_reported(root):
    build = Counter(error=RuntimeError("broken"))
    state = StateWatch()
    system = WatchSystem(build, enable_cooldown=False, ws_state=state)
    task = asyncio.ensure_future(system.run())
    await system.handle_watch_event(FsEvent.of(EventKind.CREATE, root / "src" / "main.rs"))
    assert await wait_until(lambda: not state.get().ok)
    system.shutdown()
    await task
    assert state.get().reason == "broken\n\n"


@pytest.mark.asyncio
async def test_no_error_reporting_keeps_state(root):
    build = Counter(error=RuntimeError("broken"))
    state = StateWatch()
    system = WatchSystem(build, enable_cooldown=False, ws_state=state, no_error_reporting=True)
    task = asyncio.ensure_future(system.run())
    await system.handle_watch_event(FsEvent.of(EventKind.CREATE, root / "src" / "main.rs"))
    assert await wait_until(lambda: system.last_build_finished > 0 and build.count == 1)
    await asyncio.sleep(0.05)
    system.shutdown()
    await task
    assert state.get().ok


@pytest.mark.asyncio
async def test_irrelevant_event_does_not_build(root):
    build = Counter()
    system = WatchSystem(build, enable_cooldown=False)
    await system.handle_watch_event(FsEvent.of(EventKind.ACCESS, root / "src" / "main.rs"))
    await asyncio.sleep(0.02)
    assert build.count == 0


@pytest.mark.asyncio
async def test_cooldown_suppresses_early_changes(root):
    now = [0.0]
    build = Counter()
    system = WatchSystem(build, clock=lambda: now[0])
    main = root / "src" / "main.rs"
    now[0] = 0.5
    await system.handle_watch_event(FsEvent.of(EventKind.MODIFY_DATA, main))
    await asyncio.sleep(0.02)
    assert build.count == 0
    now[0] = 2.0
    await system.handle_watch_event(FsEvent.of(EventKind.MODIFY_DATA, main))
    assert await wait_until(lambda: build.count == 1)


@pytest.mark.asyncio
async def test_change_during_build_rebuilds_once(root):
    now = [0.0]
    gate = asyncio.Event()
    build = Counter(gate=gate)
    system = WatchSystem(build, enable_cooldown=False, clock=lambda: now[0])
    task = asyncio.ensure_future(system.run())
    main = root / "src" / "main.rs"

    now[0] = 1.0
    await system.handle_watch_event(FsEvent.of(EventKind.MODIFY_DATA, main))
    assert await wait_until(lambda: build.count == 1)
    now[0] = 2.0
    await system.handle_watch_event(FsEvent.of(EventKind.MODIFY_DATA, main))
    assert build.count == 1
    gate.set()
    assert await wait_until(lambda: build.count == 2)
    await asyncio.sleep(0.05)
    system.shutdown()
    await task
    assert build.count == 2


@pytest.mark.asyncio
async def test_polling_watcher_detects_new_file(root):
    build = Counter()
    system = WatchSystem(build, [root / "src"], poll=0.05, enable_cooldown=False)
    task = asyncio.ensure_future(system.run())
    await asyncio.sleep(0.3)
    (root / "src" / "lib.rs").write_text("pub fn lib() {}")
    detected = await wait_until(lambda: build.count >= 1)
    system.shutdown()
    await task
    assert detected
    assert build.count >= 1