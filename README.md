# trunkdev

This package holds the parts of a development server for web applications
whose build output goes into a `dist` directory. Everything runs on asyncio.

- **Static serving** (`trunkdev.serve`): serves the build output. A path
  that has no file falls back to `index.html`, unless `no_spa` is set.
  Custom response headers can be added. In `text/html` responses the
  placeholders `'{{__TRUNK_ADDRESS__}}'` and `` `{{__TRUNK_ADDRESS__}}` ``
  are replaced by the request's `Host`, and `{{__TRUNK_WS_BASE__}}` by the
  websocket base.
- **Autoreload** (`trunkdev.ws`): a WebSocket at
  `<serve_base>.well-known/trunk/ws` works from the latest build state. It
  tells the browser to reload after each successful build, but not for the
  state that is already current when the socket connects. When a build
  fails it sends the failure reason instead. Messages are JSON: either
  `{"type":"reload"}` or `{"type":"buildFailure","data":{"reason":...}}`.
- **Watching** (`trunkdev.watch`): `WatchSystem` watches paths with
  watchdog, or polls them if `poll` is set, and runs your build callable
  when a relevant change arrives. Ignored paths are skipped. So is any path
  with a `.git` or `.DS_Store` segment. After each build there is a
  one-second cooldown, which can be switched off; it stops rebuild loops.
- **Proxies** (`trunkdev.proxy`, `trunkdev.serve_proxy`): send HTTP and
  WebSocket traffic under a path prefix on to a backend. The prefix can be
  given with `rewrite`. `Host` is set to the backend host. For WebSockets,
  the original `Host` is passed on as `X-Forwarded-Host`. `ProxyBuilder`
  uses one HTTP client for each set of `ProxyClientOptions` (`insecure`,
  `no_system_proxy`).
- **TLS** (`trunkdev.tls`): `TlsConfig` takes either a certificate and key
  on disk or a ready `ssl.SSLContext`.
- **Tools** (`trunkdev.tools`, `trunkdev.archive`): `tools.get()` looks for
  `sass`, `tailwindcss`, `wasm-bindgen` and `wasm-opt` on the `PATH` and
  checks their versions. If a tool is missing or has the wrong version, it
  downloads a release and unpacks it into the user cache directory. It
  refuses to download when `offline` is set.
- **Versions** (`trunkdev.version`, `trunkdev.update_check`):
  `enforce_version_with` checks a requirement such as `>=0.19.0` against a
  version and raises `VersionMismatchError` when it is not met.
  `update_check` looks for newer releases on the package index in a
  background thread, at most once a day.

## Installation

From a checkout, run `pip install .`. The `test` extra adds pytest and
pytest-asyncio.

## Examples

Build the URL that a proxied request is sent to:

```python
from trunkdev.proxy import make_outbound_uri

make_outbound_uri("https://backend/sub", "http://localhost/auth?user=user")
# -> "https://backend/sub/auth?user=user"
```

Read a tool's version from what its version command printed:

```python
from trunkdev.tools import Application

Application.WASM_OPT.format_version_output("wasm-opt version 101 (version_101)")
# -> "version_101"
```

Check that a version meets a project's requirement:

```python
from trunkdev.version import VersionMismatchError, enforce_version_with, parse_requirement

try:
    enforce_version_with(parse_requirement(">=0.19.0"), "0.18.0")
except VersionMismatchError as err:
    print(err)
```

Fill in the placeholders of an HTML page:

```python
from trunkdev.serve import inject_addresses

inject_addresses("const host = '{{__TRUNK_ADDRESS__}}';", "localhost:8080", "/")
# -> "const host = 'localhost:8080';"
```

Run the whole server from your own asyncio entry point:

```python
import asyncio
from pathlib import Path

from trunkdev.serve import ServeConfig, ServeSystem


async def build() -> None:
    # Write the build output into dist/ here; raise to report a failed build.
    Path("dist").mkdir(exist_ok=True)


async def main() -> None:
    cfg = ServeConfig(dist_dir=Path("dist"), port=8080, watch_paths=(Path("src"),))
    await ServeSystem(cfg, build).run()


asyncio.run(main())
```

`ServeSystem.run()` runs the build once. It then starts the watcher and
the HTTP server and keeps going until its `shutdown` event is set or one of
the two stops. Setting `open=True` opens the served URL in a web browser.

## What this package does not do

- It has no command-line program. You start the server from Python code.
- It does not build anything on its own. The build is whatever async
  callable you pass to `ServeSystem` or `WatchSystem`; the tools that
  `trunkdev.tools` finds or downloads are not run for you.
- It does not read project configuration files. All settings come from
  `ServeConfig`, `ProxyConfig` and the function arguments.