"""The development server: static files, autoreload websocket and proxies."""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import mimetypes
import re
import webbrowser
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Iterable, Optional, Union

from aiohttp import web

from trunkdev.serve_proxy import ProxyBuilder, ProxyClientOptions
from trunkdev.tls import TlsConfig
from trunkdev.watch import WatchSystem
from trunkdev.ws import BuildState, StateWatch, handle_ws

_log = logging.getLogger(__name__)

INDEX_HTML = "index.html"
WS_ROUTE = ".well-known/trunk/ws"
ADDRESS_PLACEHOLDER = "{{__TRUNK_ADDRESS__}}"
WS_BASE_PLACEHOLDER = "{{__TRUNK_WS_BASE__}}"
DEFAULT_ADDRESS = "127.0.0.1"

_HEADER_NAME = re.compile(r"^[!#$%&'*+\-.^_`|~0-9A-Za-z]+$")
_EXTRA_TYPES = {".wasm": "application/wasm", ".js": "text/javascript", ".mjs": "text/javascript"}

Address = Union[str, ipaddress.IPv4Address, ipaddress.IPv6Address]


def _normalize_base(base: str) -> str:
    if not base.startswith("/"):
        base = "/" + base
    if not base.endswith("/"):
        base += "/"
    return base


@dataclass(frozen=True)
class ProxyConfig:
    """One proxied backend."""

    backend: str
    rewrite: Optional[str] = None
    ws: bool = False
    insecure: bool = False
    no_system_proxy: bool = False


@dataclass(frozen=True)
class ServeConfig:
    """Settings of the development server and the watcher behind it."""

    dist_dir: Path
    port: int = 8080
    addresses: tuple[Address, ...] = (DEFAULT_ADDRESS,)
    serve_base: str = "/"
    ws_base: Optional[str] = None
    tls: Optional[TlsConfig] = None
    open: bool = False
    no_autoreload: bool = False
    no_spa: bool = False
    headers: dict[str, str] = field(default_factory=dict)
    proxy_backend: Optional[str] = None
    proxy_rewrite: Optional[str] = None
    proxy_ws: bool = False
    proxy_insecure: bool = False
    proxy_no_sys_proxy: bool = False
    proxies: tuple[ProxyConfig, ...] = ()
    watch_paths: tuple[Path, ...] = ()
    ignored_paths: tuple[Path, ...] = ()
    poll: Optional[float] = None
    enable_cooldown: bool = True
    no_error_reporting: bool = False


def _new_state_watch() -> StateWatch:
    return StateWatch(BuildState())


@dataclass
class ServerState:
    """What request handlers need to know."""

    dist_dir: Path
    serve_base: str = "/"
    ws_state: StateWatch = field(default_factory=_new_state_watch)
    ws_base: Optional[str] = None
    no_autoreload: bool = False
    headers: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.dist_dir = Path(self.dist_dir)
        self.serve_base = _normalize_base(self.serve_base)
        ws_base = self.ws_base if self.ws_base is not None else self.serve_base
        if not ws_base.endswith("/"):
            ws_base += "/"
        self.ws_base = ws_base


def inject_addresses(html: str, host: Optional[str], ws_base: str) -> str:
    """Fill in the server address and websocket base placeholders of a page."""
    replacement = f"'{host}'" if host is not None else "window.location.host"
    return (
        html.replace(f"'{ADDRESS_PLACEHOLDER}'", replacement)
        .replace(f"`{ADDRESS_PLACEHOLDER}`", replacement)
        .replace(WS_BASE_PLACEHOLDER, ws_base)
    )


def _local_for(ip: Union[ipaddress.IPv4Address, ipaddress.IPv6Address]):
    if ip.version == 4:
        return ipaddress.IPv4Address("127.0.0.1")
    return ipaddress.IPv6Address("::1")


def _format_socket(ip, port: int) -> str:
    return f"[{ip}]:{port}" if ip.version == 6 else f"{ip}:{port}"


def listening_urls(addresses: Iterable[Address], port: int, base: str, tls: bool) -> list[str]:
    """URLs the server can be reached at; unspecified addresses become loopback."""
    prefix = "https" if tls else "http"
    ips = set()
    for address in addresses:
        ip = ipaddress.ip_address(str(address))
        ips.add(_local_for(ip) if ip.is_unspecified else ip)
    ordered = sorted(ips, key=lambda ip: (ip.version, int(ip)))
    return [f"{prefix}://{_format_socket(ip, port)}{base}" for ip in ordered]


def _validated_headers(headers: dict[str, str]) -> dict[str, str]:
    for name, value in headers.items():
        if not _HEADER_NAME.match(name):
            raise ValueError(f"invalid header {name!r}")
        if any((ord(ch) < 0x20 and ch != "\t") or ord(ch) == 0x7F for ch in value):
            raise ValueError(f"invalid header value {value!r} for header {name}")
    return dict(headers)


def _content_type(path: Path) -> str:
    extra = _EXTRA_TYPES.get(path.suffix.lower())
    if extra is not None:
        return extra
    guessed, _ = mimetypes.guess_type(path.name)
    return guessed or "application/octet-stream"


def _locate(dist_dir: Path, tail: str) -> Optional[Path]:
    root = dist_dir.resolve()
    candidate = (root / tail).resolve()
    if not candidate.is_relative_to(root):
        return None
    if candidate.is_dir():
        candidate = candidate / INDEX_HTML
    return candidate if candidate.is_file() else None


def _static_handler(
    state: ServerState, no_spa: bool, headers: dict[str, str]
) -> Callable[[web.Request], Awaitable[web.StreamResponse]]:
    async def serve(request: web.Request) -> web.StreamResponse:
        tail = request.match_info.get("tail", "")
        path = _locate(state.dist_dir, tail)
        if path is None and not no_spa:
            index = state.dist_dir / INDEX_HTML
            path = index if index.is_file() else None
        if path is None:
            return web.Response(status=404, headers=headers)

        try:
            body = await asyncio.to_thread(path.read_bytes)
        except OSError as err:
            _log.error("failed serving static file: %s", err)
            return web.Response(status=500)

        content_type = _content_type(path)
        if content_type == "text/html":
            try:
                text = body.decode("utf-8")
            except UnicodeDecodeError as err:
                _log.debug("Unable to parse for injecting: %s", err)
            else:
                _log.debug("Replacing variable")
                body = inject_addresses(
                    text, request.headers.get("Host"), state.ws_base or "/"
                ).encode("utf-8")

        response = web.Response(body=body, content_type=content_type)
        for name, value in headers.items():
            response.headers[name] = value
        return response

    return serve


def build_app(state: ServerState, cfg: ServeConfig) -> web.Application:
    """The application serving static files, the autoreload socket and proxies."""
    headers = _validated_headers(state.headers)
    app = web.Application()
    base = state.serve_base

    async def autoreload(request: web.Request) -> web.StreamResponse:
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        await handle_ws(ws, state.ws_state)
        return ws

    # The socket always lives under the serve base; ws_base only changes the lookup.
    app.router.add_get(base + WS_ROUTE, autoreload)

    builder = ProxyBuilder(app)
    if cfg.proxy_backend is not None:
        builder.register_proxy(
            cfg.proxy_ws,
            cfg.proxy_backend,
            cfg.proxy_rewrite,
            ProxyClientOptions(cfg.proxy_insecure, cfg.proxy_no_sys_proxy),
        )
    else:
        for proxy in cfg.proxies:
            builder.register_proxy(
                proxy.ws,
                proxy.backend,
                proxy.rewrite,
                ProxyClientOptions(proxy.insecure, proxy.no_system_proxy),
            )

    # Static files come last so that they only catch what nothing else handles.
    serve = _static_handler(state, cfg.no_spa, headers)
    if base != "/":
        app.router.add_get(base.rstrip("/"), serve)
    app.router.add_get(base + "{tail:.*}", serve)
    _log.info("serving static assets at -> %s", base)
    return builder.build()


async def run_server(cfg: ServeConfig, app: web.Application, shutdown: asyncio.Event) -> None:
    """Serve the application on every configured address until shutdown is set."""
    runner = web.AppRunner(app)
    await runner.setup()
    try:
        ssl_context = cfg.tls.ssl_context() if cfg.tls is not None else None
        addresses = cfg.addresses or (DEFAULT_ADDRESS,)
        for address in addresses:
            site = web.TCPSite(runner, str(address), cfg.port, ssl_context=ssl_context)
            await site.start()
        _log.info("server listening at:")
        base = _normalize_base(cfg.serve_base)
        for url in listening_urls(addresses, cfg.port, base, cfg.tls is not None):
            _log.info("    %s", url)
        await shutdown.wait()
        _log.debug("server is shutting down")
    finally:
        await runner.cleanup()


def _state_from_config(cfg: ServeConfig, ws_state: StateWatch) -> ServerState:
    return ServerState(
        dist_dir=cfg.dist_dir,
        serve_base=cfg.serve_base,
        ws_state=ws_state,
        ws_base=cfg.ws_base,
        no_autoreload=cfg.no_autoreload,
        headers=dict(cfg.headers),
    )


class ServeSystem:
    """A build and watch system together with the server for its output."""

    def __init__(
        self,
        cfg: ServeConfig,
        build: Callable[[], Awaitable[None]],
        shutdown: Optional[asyncio.Event] = None,
    ) -> None:
        self.cfg = cfg
        self.shutdown = shutdown if shutdown is not None else asyncio.Event()
        self.ws_state = _new_state_watch()
        self.state = _state_from_config(cfg, self.ws_state)
        self.watch = WatchSystem(
            build,
            cfg.watch_paths,
            cfg.ignored_paths,
            poll=cfg.poll,
            enable_cooldown=cfg.enable_cooldown,
            no_error_reporting=cfg.no_error_reporting,
            ws_state=self.ws_state,
        )
        prefix = "https" if cfg.tls is not None else "http"
        address = ipaddress.ip_address(str(cfg.addresses[0] if cfg.addresses else DEFAULT_ADDRESS))
        self.http_addr = f"{prefix}://{_format_socket(address, cfg.port)}{self.state.serve_base}"

    async def run(self) -> None:
        """Build once, then watch and serve until shutdown or until either part stops."""
        try:
            await self.watch.build()
        except Exception as err:  # the first build's failure does not stop serving
            _log.error("initial build failed: %s", err)

        app = build_app(self.state, self.cfg)
        watch_task = asyncio.ensure_future(self.watch.run())
        server_task = asyncio.ensure_future(run_server(self.cfg, app, self.shutdown))

        if self.cfg.open:
            try:
                webbrowser.open(self.http_addr)
            except webbrowser.Error as err:
                _log.error("error opening browser: %s", err)

        stop_task = asyncio.ensure_future(self.shutdown.wait())
        try:
            await asyncio.wait(
                {watch_task, server_task, stop_task}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            self.shutdown.set()
            self.watch.shutdown()
            results = await asyncio.gather(
                watch_task, server_task, stop_task, return_exceptions=True
            )
        for result in results[:2]:
            if isinstance(result, Exception):
                raise result