"""Autoreload websocket: build state tracking and messages to the browser."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Optional

from aiohttp import WSMsgType

_log = logging.getLogger(__name__)


@dataclass(frozen=True)
class BuildState:
    """Outcome of the latest build; ``reason`` is set when it failed."""

    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.reason is None


@dataclass(frozen=True)
class ClientMessage:
    """A message to the browser: a reload, or a build failure with its reason."""

    reason: Optional[str] = None

    @property
    def is_reload(self) -> bool:
        return self.reason is None

    def to_json(self) -> str:
        if self.reason is None:
            payload = {"type": "reload"}
        else:
            payload = {"type": "buildFailure", "data": {"reason": self.reason}}
        return json.dumps(payload, separators=(",", ":"), ensure_ascii=False)

    @classmethod
    def from_json(cls, text: str) -> "ClientMessage":
        payload = json.loads(text)
        if not isinstance(payload, dict):
            raise ValueError("client message must be a JSON object")
        kind = payload.get("type")
        if kind == "reload":
            return cls()
        if kind == "buildFailure":
            data = payload.get("data")
            if not isinstance(data, dict) or not isinstance(data.get("reason"), str):
                raise ValueError("build failure message needs a reason")
            return cls(data["reason"])
        raise ValueError(f"unknown client message type: {kind!r}")


class StateWatch:
    """Holds the latest build state and lets readers wait for changes."""

    def __init__(self, initial: Optional[BuildState] = None) -> None:
        self._value = initial if initial is not None else BuildState()
        self._version = 0
        self._closed = False
        self._waiters: set[asyncio.Event] = set()

    def get(self) -> BuildState:
        return self._value

    def send_replace(self, state: BuildState) -> BuildState:
        """Store a new state, wake readers and return the previous state."""
        previous = self._value
        self._value = state
        self._version += 1
        self._notify()
        return previous

    def close(self) -> None:
        self._closed = True
        self._notify()

    def _notify(self) -> None:
        for event in self._waiters:
            event.set()

    async def changes(self) -> AsyncIterator[BuildState]:
        """Yield the current state, then each newer one until closed."""
        seen = self._version
        yield self._value
        while True:
            while self._version == seen and not self._closed:
                event = asyncio.Event()
                self._waiters.add(event)
                try:
                    await event.wait()
                finally:
                    self._waiters.discard(event)
            if self._version == seen:
                return
            seen = self._version
            yield self._value


def message_for_state(
    state: BuildState, first: bool
) -> tuple[Optional[ClientMessage], bool]:
    """The message to send for a state, and the updated ``first`` flag.

    A successful state seen first is dropped, since it would reload the page
    right after connecting; failures are always reported.
    """
    if state.ok:
        if first:
            return None, False
        return ClientMessage(), first
    return ClientMessage(state.reason), first


async def _next_state(changes: AsyncIterator[BuildState]) -> Optional[BuildState]:
    try:
        return await changes.__anext__()
    except StopAsyncIteration:
        return None


async def handle_ws(ws, state_watch: StateWatch) -> None:
    """Serve one autoreload websocket until either side goes away."""
    changes = state_watch.changes()
    _log.debug("autoreload websocket opened")
    first = True
    recv_task = asyncio.ensure_future(ws.receive())
    state_task = asyncio.ensure_future(_next_state(changes))
    try:
        while True:
            done, _ = await asyncio.wait(
                {recv_task, state_task}, return_when=asyncio.FIRST_COMPLETED
            )

            if recv_task in done:
                msg = recv_task.result()
                if msg.type == WSMsgType.CLOSE:
                    _log.debug("received close from browser: %s", msg.extra)
                    code = msg.data if isinstance(msg.data, int) else 1000
                    reason = (msg.extra or "").encode()
                    await ws.close(code=code, message=reason)
                    return
                if msg.type in (WSMsgType.CLOSING, WSMsgType.CLOSED):
                    _log.debug("lost websocket")
                    return
                if msg.type == WSMsgType.ERROR:
                    _log.debug("autoreload websocket closed: %s", msg.data)
                    return
                _log.debug("received message from browser: %s (ignoring)", msg.data)
                recv_task = asyncio.ensure_future(ws.receive())

            if state_task in done:
                state = state_task.result()
                if state is None:
                    _log.debug("state watcher closed")
                    return
                _log.debug("Build state changed: %s", state)
                message, first = message_for_state(state, first)
                if message is not None:
                    try:
                        await ws.send_str(message.to_json())
                    except (ConnectionError, RuntimeError) as err:
                        _log.info("autoload websocket failed to send: %s", err)
                        break
                state_task = asyncio.ensure_future(_next_state(changes))
    finally:
        for task in (recv_task, state_task):
            task.cancel()
        await asyncio.gather(recv_task, state_task, return_exceptions=True)
        await changes.aclose()
        _log.debug("exiting WS handler")