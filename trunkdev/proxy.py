"""Forwarding of HTTP requests and websockets to a backend server."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Iterable, Optional, Union
from urllib.parse import urlsplit

import aiohttp
from aiohttp import WSMsgType, web

_log = logging.getLogger(__name__)

# The de-facto standard header carrying the host the client originally asked for.
X_FORWARDED_HOST = "x-forwarded-host"

_CHUNK_SIZE = 64 * 1024

# The body is re-sent as a whole, so its framing is recomputed by the client.
_REQUEST_SKIP = frozenset({"content-length", "transfer-encoding"})
# Connection-level headers are set by the server for the frontend connection.
_RESPONSE_SKIP = frozenset({"transfer-encoding", "connection", "keep-alive"})
# The websocket client performs its own handshake.
_HANDSHAKE_SKIP = frozenset(
    {
        "upgrade",
        "connection",
        "sec-websocket-key",
        "sec-websocket-version",
        "sec-websocket-extensions",
        "sec-websocket-protocol",
    }
)
# Close codes that must not be sent on the wire.
_RESERVED_CLOSE_CODES = frozenset({0, 1005, 1006, 1015})

HeaderSource = Union[Any, Iterable[tuple[str, str]]]


def _split(uri: str) -> tuple[str, str, str, Optional[str]]:
    """Split a URI into scheme, authority, path and query (None if absent)."""
    if "://" in uri:
        parts = urlsplit(uri)
        has_query = "?" in uri.partition("#")[0]
        return parts.scheme, parts.netloc, parts.path, parts.query if has_query else None
    path, sep, query = uri.partition("#")[0].partition("?")
    return "", "", path, query if sep else None


def _host_of(authority: str) -> str:
    """The host part of an authority, without user information or port."""
    host_port = authority.rpartition("@")[2]
    if host_port.startswith("["):
        end = host_port.find("]")
        return host_port[: end + 1] if end >= 0 else host_port
    return host_port.partition(":")[0]


def _header_items(headers: HeaderSource) -> Iterable[tuple[str, str]]:
    if hasattr(headers, "items"):
        return headers.items()
    return headers


def _listening_path(backend: str, rewrite: Optional[str]) -> str:
    if rewrite is not None:
        return rewrite
    return _split(backend)[2] or "/"


def make_outbound_uri(backend: str, request: str) -> str:
    """Join the backend URI with the path and query of an inbound request.

    The inbound path is taken to be already stripped of the prefix the proxy
    listens at; it is appended to the backend path.
    """
    scheme, authority, backend_path, _ = _split(backend)
    if not scheme or not authority:
        raise ValueError(
            f"error building proxy request to backend: {backend!r} needs a scheme and a host"
        )
    _, _, request_path, query = _split(request)

    base = backend_path.lstrip("/")
    rest = request_path.lstrip("/")
    separator = "/" if base and rest and not base.endswith("/") else ""

    uri = f"{scheme}://{authority}/{base}{separator}{rest}"
    if query is not None:
        uri += "?" + query
    return uri


@dataclass(frozen=True)
class OutboundRequest:
    """A request to be sent to a backend: target, method and headers."""

    uri: str
    method: str = "GET"
    headers: tuple[tuple[str, str], ...] = ()

    def header(self, name: str) -> Optional[str]:
        """The first value of a header, compared without regard to case."""
        key = name.lower()
        return next((value for item, value in self.headers if item == key), None)

    def get_all(self, name: str) -> list[str]:
        """Every value of a header, in order."""
        key = name.lower()
        return [value for item, value in self.headers if item == key]


def make_outbound_request(outbound_uri: str, headers: HeaderSource) -> OutboundRequest:
    """Build the request for the backend, pointing Host at it.

    The original Host value is passed on as X-Forwarded-Host.
    """
    _, authority, _, _ = _split(outbound_uri)
    host = _host_of(authority)
    if not host:
        raise ValueError("No host found in outbound URI")

    outbound: list[tuple[str, str]] = []
    for name, value in _header_items(headers):
        key = name.lower()
        if key == "host":
            outbound.append(("host", host))
            outbound.append((X_FORWARDED_HOST, value))
        else:
            outbound.append((key, value))
    return OutboundRequest(outbound_uri, "GET", tuple(outbound))


class _MountedProxy:
    """Common routing for handlers mounted under a path prefix."""

    def __init__(self, backend: str, rewrite: Optional[str]) -> None:
        self.backend = backend
        self.rewrite = rewrite

    def path(self) -> str:
        return _listening_path(self.backend, self.rewrite)

    def _prefix(self) -> str:
        prefix = self.path().rstrip("/")
        if prefix and not prefix.startswith("/"):
            prefix = "/" + prefix
        return prefix

    def _routes(self) -> list[str]:
        prefix = self._prefix()
        if not prefix:
            return ["/{tail:.*}"]
        return [prefix, prefix + "/{tail:.*}"]

    def _inner_uri(self, request: web.Request) -> str:
        """The request path with the listening prefix removed, plus its query."""
        prefix = self._prefix()
        raw_path = request.rel_url.raw_path
        rest = raw_path[len(prefix):] if raw_path.startswith(prefix) else raw_path
        if not rest.startswith("/"):
            rest = "/" + rest
        query = request.rel_url.raw_query_string
        return f"{rest}?{query}" if query else rest


class ProxyHandlerHttp(_MountedProxy):
    """Proxies HTTP requests under a path prefix to a backend."""

    def __init__(
        self, client: aiohttp.ClientSession, backend: str, rewrite: Optional[str] = None
    ) -> None:
        super().__init__(backend, rewrite)
        self.client = client

    def path(self) -> str:
        """The path this proxy listens at."""
        return _listening_path(self.backend, self.rewrite)

    def register(self, app: web.Application) -> web.Application:
        """Add this proxy's routes to the application."""
        for route in self._routes():
            app.router.add_route("*", route, self.handle)
        return app

    async def handle(self, request: web.Request) -> web.StreamResponse:
        """Forward one request and stream the backend's response back."""
        try:
            outbound_uri = make_outbound_uri(self.backend, self._inner_uri(request))
        except ValueError as err:
            _log.error("error handling request: %s", err)
            return web.Response(status=500)

        backend_host = _host_of(_split(self.backend)[1])
        headers = [
            (name, value)
            for name, value in request.headers.items()
            if name.lower() not in _REQUEST_SKIP
            and not (backend_host and name.lower() == "host")
        ]
        if backend_host:
            headers.append(("Host", backend_host))
        body = await request.read()

        response: Optional[web.StreamResponse] = None
        try:
            async with self.client.request(
                request.method, outbound_uri, headers=headers, data=body or None
            ) as upstream:
                response = web.StreamResponse(status=upstream.status, reason=upstream.reason)
                for name, value in upstream.headers.items():
                    if name.lower() not in _RESPONSE_SKIP:
                        response.headers.add(name, value)
                await response.prepare(request)
                async for chunk in upstream.content.iter_chunked(_CHUNK_SIZE):
                    await response.write(chunk)
                await response.write_eof()
                return response
        except (aiohttp.ClientError, asyncio.TimeoutError) as err:
            _log.error("error proxying request to proxy backend: %s", err)
            if response is not None and response.prepared:
                return response
            return web.Response(status=500)


async def _forward(source, sink, source_name: str, sink_name: str) -> None:
    """Relay websocket messages from one side to the other until either closes."""
    while True:
        msg = await source.receive()
        try:
            if msg.type == WSMsgType.TEXT:
                await sink.send_str(msg.data)
            elif msg.type == WSMsgType.BINARY:
                await sink.send_bytes(msg.data)
            elif msg.type == WSMsgType.PING:
                await sink.ping(msg.data)
            elif msg.type == WSMsgType.PONG:
                await sink.pong(msg.data)
            elif msg.type == WSMsgType.CLOSE:
                code = msg.data if isinstance(msg.data, int) else 1000
                if code in _RESERVED_CLOSE_CODES:
                    code = 1000
                await sink.close(code=code, message=(msg.extra or "").encode())
                return
            else:
                return
        except (ConnectionError, RuntimeError) as err:
            _log.error(
                "error forwarding %s WebSocket message to %s: %s", source_name, sink_name, err
            )
            return


class ProxyHandlerWebSocket(_MountedProxy):
    """Proxies websocket connections under a path prefix to a backend."""

    def __init__(self, backend: str, rewrite: Optional[str] = None) -> None:
        super().__init__(backend, rewrite)

    def path(self) -> str:
        """The path this proxy listens at."""
        return _listening_path(self.backend, self.rewrite)

    def register(self, app: web.Application) -> web.Application:
        """Add this proxy's routes to the application."""
        for route in self._routes():
            app.router.add_get(route, self.handle)
        return app

    async def handle(self, request: web.Request) -> web.StreamResponse:
        """Upgrade the request and relay messages to and from the backend."""
        frontend = web.WebSocketResponse()
        if not frontend.can_prepare(request).ok:
            return web.Response(status=400, text="expected a websocket upgrade request")
        await frontend.prepare(request)
        _log.debug("new websocket connection")

        try:
            outbound_uri = make_outbound_uri(self.backend, self._inner_uri(request))
            outbound = make_outbound_request(outbound_uri, request.headers)
        except ValueError as err:
            _log.error("failed to build outbound request: %s", err)
            await frontend.close()
            return frontend

        headers = [(name, value) for name, value in outbound.headers if name not in _HANDSHAKE_SKIP]
        protocols = tuple(
            part.strip()
            for value in outbound.get_all("sec-websocket-protocol")
            for part in value.split(",")
            if part.strip()
        )

        async with aiohttp.ClientSession() as session:
            try:
                backend = await session.ws_connect(
                    outbound_uri, headers=headers, protocols=protocols
                )
            except (aiohttp.ClientError, asyncio.TimeoutError) as err:
                _log.error(
                    "error establishing WebSocket connection to backend %s for proxy: %s",
                    outbound_uri,
                    err,
                )
                await frontend.close()
                return frontend

            try:
                tasks = {
                    asyncio.ensure_future(_forward(frontend, backend, "frontend", "backend")),
                    asyncio.ensure_future(_forward(backend, frontend, "backend", "frontend")),
                }
                _, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
            finally:
                await backend.close()

        await frontend.close()
        _log.debug("websocket connection closed")
        return frontend