"""File system watching that triggers rebuilds and reports their outcome."""

from __future__ import annotations

import asyncio
import enum
import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Iterable, Optional, Union

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer
from watchdog.observers.polling import PollingObserver

from trunkdev.ws import BuildState, StateWatch

_log = logging.getLogger(__name__)

# Path segments that are never reported as changes.
BLACKLIST = frozenset({".git", ".DS_Store"})
# Time over which bursts of file system events are gathered, in seconds.
DEBOUNCE_DURATION = 0.025
# Changes that arrive within this many seconds after a build finished are ignored.
# Copying files into the output directory can report content modifications even
# though nothing changed, which would otherwise cause endless rebuilds.
WATCHER_COOLDOWN = 1.0

PathLike = Union[str, os.PathLike]
BuildFn = Callable[[], Awaitable[None]]


class EventKind(enum.Enum):
    """The kind of a file system change."""

    CREATE = "create"
    REMOVE = "remove"
    MODIFY_NAME = "modify-name"
    MODIFY_DATA = "modify-data"
    MODIFY_METADATA_WRITE_TIME = "modify-metadata-write-time"
    MODIFY_METADATA_OTHER = "modify-metadata-other"
    MODIFY_ANY = "modify-any"
    MODIFY_OTHER = "modify-other"
    ACCESS = "access"
    OTHER = "other"

    @property
    def triggers_build(self) -> bool:
        return self in _RELEVANT_KINDS


_RELEVANT_KINDS = frozenset(
    {
        EventKind.CREATE,
        EventKind.REMOVE,
        EventKind.MODIFY_NAME,
        EventKind.MODIFY_DATA,
        EventKind.MODIFY_METADATA_WRITE_TIME,
        EventKind.MODIFY_ANY,
    }
)


@dataclass(frozen=True)
class FsEvent:
    """A change of the given kind affecting one or more paths."""

    kind: EventKind
    paths: tuple[Path, ...]

    @classmethod
    def of(cls, kind: EventKind, *paths: PathLike) -> "FsEvent":
        return cls(kind, tuple(Path(p) for p in paths))


def is_blacklisted(path: PathLike) -> bool:
    """Whether any segment of the path is on the blacklist."""
    return any(part in BLACKLIST for part in Path(path).parts)


def build_error_reason(error: BaseException) -> str:
    """Describe a build error together with the chain of errors that caused it."""
    lines = [f"{error}\n\n"]
    current = _cause_of(error)
    index = 0
    while current is not None:
        if index == 0:
            lines.append("Caused by:\n")
        lines.append(f"\t{index}: {current}\n")
        index += 1
        current = _cause_of(current)
    return "".join(lines)


def _cause_of(error: BaseException) -> Optional[BaseException]:
    if error.__cause__ is not None:
        return error.__cause__
    if error.__suppress_context__:
        return None
    return error.__context__


def _convert(event: FileSystemEvent) -> FsEvent:
    src = os.fsdecode(event.src_path)
    kind_name = event.event_type
    if kind_name == "moved":
        dest = os.fsdecode(getattr(event, "dest_path", "") or "")
        paths = (src, dest) if dest else (src,)
        return FsEvent.of(EventKind.MODIFY_NAME, *paths)
    if kind_name == "created":
        return FsEvent.of(EventKind.CREATE, src)
    if kind_name == "deleted":
        return FsEvent.of(EventKind.REMOVE, src)
    if kind_name == "modified":
        kind = EventKind.MODIFY_ANY if event.is_directory else EventKind.MODIFY_DATA
        return FsEvent.of(kind, src)
    if kind_name in ("opened", "closed", "closed_no_write"):
        return FsEvent.of(EventKind.ACCESS, src)
    return FsEvent.of(EventKind.OTHER, src)


class _Handler(FileSystemEventHandler):
    def __init__(self, deliver: Callable[[FsEvent], None]) -> None:
        super().__init__()
        self._deliver = deliver

    def on_any_event(self, event: FileSystemEvent) -> None:
        self._deliver(_convert(event))


class WatchSystem:
    """Watches paths and runs the build whenever relevant files change."""

    def __init__(
        self,
        build: BuildFn,
        paths: Iterable[PathLike] = (),
        ignored_paths: Iterable[PathLike] = (),
        *,
        poll: Optional[float] = None,
        enable_cooldown: bool = True,
        no_error_reporting: bool = False,
        ws_state: Optional[StateWatch] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._build = build
        self._build_lock = asyncio.Lock()
        self.paths = [Path(p) for p in paths]
        for path in self.paths:
            if not path.exists():
                raise FileNotFoundError(f"failed to watch {str(path)!r} for file system changes")
        self.ignored_paths: list[Path] = [Path(p).resolve() for p in ignored_paths]
        self.poll = poll
        self.watcher_cooldown = WATCHER_COOLDOWN if enable_cooldown else None
        _log.debug("Build cooldown: %s", self.watcher_cooldown)
        self.no_error_reporting = no_error_reporting
        self.ws_state = ws_state
        self._clock = clock

        now = clock()
        self.last_build_started = now
        self.last_build_finished = now
        self.last_change = now

        self._watch_queue: asyncio.Queue[FsEvent] = asyncio.Queue()
        self._build_queue: asyncio.Queue[Optional[BaseException]] = asyncio.Queue()
        self._shutdown = asyncio.Event()
        self._pending: list[FsEvent] = []
        self._flush_handle: Optional[asyncio.TimerHandle] = None
        self._build_tasks: set[asyncio.Task] = set()

    async def build(self) -> None:
        """Run a build, raising whatever the build raises."""
        async with self._build_lock:
            await self._build()

    def shutdown(self) -> None:
        """Ask a running watch system to stop."""
        self._shutdown.set()

    def _make_observer(self, loop: asyncio.AbstractEventLoop):
        if self.poll is not None:
            _log.info("Running in polling mode: %ss", self.poll)
            observer = PollingObserver(timeout=self.poll)
        else:
            observer = Observer()
        handler = _Handler(lambda event: loop.call_soon_threadsafe(self._queue_raw, event))
        for path in self.paths:
            observer.schedule(handler, str(path), recursive=True)
        return observer

    def _queue_raw(self, event: FsEvent) -> None:
        self._pending.append(event)
        if self._flush_handle is None:
            loop = asyncio.get_running_loop()
            self._flush_handle = loop.call_later(DEBOUNCE_DURATION, self._flush)

    def _flush(self) -> None:
        self._flush_handle = None
        events = list(dict.fromkeys(self._pending))
        self._pending.clear()
        for event in events:
            self._watch_queue.put_nowait(event)

    async def run(self) -> None:
        """Respond to change events and build results until shut down."""
        loop = asyncio.get_running_loop()
        observer = self._make_observer(loop) if self.paths else None
        if observer is not None:
            observer.start()

        watch_task = asyncio.ensure_future(self._watch_queue.get())
        build_task = asyncio.ensure_future(self._build_queue.get())
        shutdown_task = asyncio.ensure_future(self._shutdown.wait())
        try:
            while True:
                done, _ = await asyncio.wait(
                    {watch_task, build_task, shutdown_task},
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if shutdown_task in done:
                    break
                if watch_task in done:
                    await self.handle_watch_event(watch_task.result())
                    watch_task = asyncio.ensure_future(self._watch_queue.get())
                if build_task in done:
                    await self._build_complete(build_task.result())
                    build_task = asyncio.ensure_future(self._build_queue.get())
        finally:
            tasks = [watch_task, build_task, shutdown_task, *self._build_tasks]
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            if self._flush_handle is not None:
                self._flush_handle.cancel()
                self._flush_handle = None
            if observer is not None:
                observer.stop()
                await asyncio.to_thread(observer.join)
            _log.debug("watcher system has shut down")

    async def _build_complete(self, error: Optional[BaseException]) -> None:
        _log.debug("Build reported completion")
        self.last_build_finished = self._clock()
        if self.ws_state is not None:
            if error is None:
                self.ws_state.send_replace(BuildState())
            elif not self.no_error_reporting:
                self.ws_state.send_replace(BuildState(build_error_reason(error)))
        self._check_spawn_build()

    def _is_build_active(self) -> bool:
        return self.last_build_started > self.last_build_finished

    def _spawn_build(self) -> None:
        self.last_build_started = self._clock()

        async def run_build() -> None:
            try:
                await self.build()
            except asyncio.CancelledError:
                raise
            except Exception as err:  # the build's failure is reported, not raised
                self._build_queue.put_nowait(err)
            else:
                self._build_queue.put_nowait(None)

        task = asyncio.ensure_future(run_build())
        self._build_tasks.add(task)
        task.add_done_callback(self._build_tasks.discard)

    def _check_spawn_build(self) -> None:
        if self.last_change <= self.last_build_started:
            _log.debug("No changes since the last build was started")
            return
        _log.debug("Changes since the last build was started, checking cooldown")
        if self.watcher_cooldown is not None:
            since_build = max(0.0, self.last_change - self.last_build_finished)
            if since_build < self.watcher_cooldown:
                _log.debug(
                    "Cooldown is still active: %.3fs remaining",
                    self.watcher_cooldown - since_build,
                )
                return
        self._spawn_build()

    async def handle_watch_event(self, event: FsEvent) -> None:
        """Record a relevant change and start a build unless one is running."""
        _log.debug("change detected in %s of type %s", event.paths, event.kind)
        if not self.is_event_relevant(event):
            _log.debug("Event not relevant, skipping")
            return
        self.last_change = self._clock()
        if self._is_build_active():
            _log.debug("Build is active, postponing start")
            return
        self._check_spawn_build()

    def is_event_relevant(self, event: FsEvent) -> bool:
        """Whether the event concerns an existing, watched, non-ignored path."""
        if not event.kind.triggers_build:
            return False
        for raw_path in event.paths:
            try:
                path = Path(raw_path).resolve(strict=True)
            except (OSError, RuntimeError):
                # Removed resources cannot be resolved; they are skipped.
                continue
            if any(ancestor in self.ignored_paths for ancestor in (path, *path.parents)):
                continue
            if is_blacklisted(path):
                continue
            _log.debug("accepted change in %s of type %s", path, event.kind)
            return True
        return False

    def update_ignore_list(self, path: PathLike) -> None:
        """Add a path to ignore, resolved when it exists."""
        raw = Path(path)
        try:
            resolved = raw.resolve(strict=True)
        except (OSError, RuntimeError):
            resolved = raw
        if resolved not in self.ignored_paths:
            self.ignored_paths.append(resolved)