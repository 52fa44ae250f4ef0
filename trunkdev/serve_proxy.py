"""Registration of configured proxies and the HTTP clients they share."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import aiohttp
from aiohttp import web

from trunkdev.proxy import ProxyHandlerHttp, ProxyHandlerWebSocket

_log = logging.getLogger(__name__)

DANGER = "⚠️"


@dataclass(frozen=True)
class ProxyClientOptions:
    """Settings that decide which HTTP client a proxy uses."""

    insecure: bool = False
    no_system_proxy: bool = False


def _create_client(opts: ProxyClientOptions) -> aiohttp.ClientSession:
    connector = aiohttp.TCPConnector(ssl=False) if opts.insecure else aiohttp.TCPConnector()
    return aiohttp.ClientSession(
        connector=connector,
        trust_env=not opts.no_system_proxy,
        auto_decompress=False,
        timeout=aiohttp.ClientTimeout(total=None),
    )


class ProxyClients:
    """One HTTP client per distinct set of options, created on first use.

    Clients must be requested while an event loop is running.
    """

    def __init__(self) -> None:
        self._clients: dict[ProxyClientOptions, aiohttp.ClientSession] = {}

    def get_client(self, opts: ProxyClientOptions) -> aiohttp.ClientSession:
        client = self._clients.get(opts)
        if client is None:
            client = self._clients[opts] = _create_client(opts)
        return client

    async def close(self) -> None:
        """Close every client created so far."""
        clients = list(self._clients.values())
        self._clients.clear()
        for client in clients:
            await client.close()


class ProxyBuilder:
    """Adds proxy routes to an application; clients close with the application."""

    def __init__(self, app: web.Application, clients: Optional[ProxyClients] = None) -> None:
        self.app = app
        self.clients = clients if clients is not None else ProxyClients()
        app.on_cleanup.append(self._close_clients)

    async def _close_clients(self, _app: web.Application) -> None:
        await self.clients.close()

    def register_proxy(
        self,
        ws: bool,
        backend: str,
        rewrite: Optional[str] = None,
        opts: Optional[ProxyClientOptions] = None,
    ) -> "ProxyBuilder":
        """Register a websocket or HTTP proxy to ``backend``."""
        opts = opts if opts is not None else ProxyClientOptions()
        if ws:
            ws_handler = ProxyHandlerWebSocket(backend, rewrite)
            _log.info("proxying websocket %s -> %s", ws_handler.path(), backend)
            ws_handler.register(self.app)
            return self

        http_handler = ProxyHandlerHttp(self.clients.get_client(opts), backend, rewrite)
        _log.info(
            "proxying %s -> %s%s%s",
            http_handler.path(),
            backend,
            "; ignoring system proxy" if opts.no_system_proxy else "",
            f"; {DANGER} insecure TLS" if opts.insecure else "",
        )
        http_handler.register(self.app)
        return self

    def build(self) -> web.Application:
        return self.app