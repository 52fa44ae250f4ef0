"""Locate external build tools, downloading and installing them when missing."""

from __future__ import annotations

import asyncio
import enum
import logging
import os
import platform
import shutil
import ssl
import sys
import tarfile
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

import aiohttp
import platformdirs

from trunkdev.archive import Archive, ArchiveKind
from trunkdev.version import NAME

_log = logging.getLogger(__name__)

_CHUNK_SIZE = 64 * 1024
_SUPPORTED_OS = ("windows", "macos", "linux")
_SUPPORTED_ARCH = ("x86_64", "aarch64")


def _detect_os() -> Optional[str]:
    if sys.platform.startswith("win"):
        return "windows"
    if sys.platform == "darwin":
        return "macos"
    if sys.platform.startswith("linux"):
        return "linux"
    return None


def _detect_arch() -> Optional[str]:
    machine = platform.machine().lower()
    if machine in ("x86_64", "amd64"):
        return "x86_64"
    if machine in ("aarch64", "arm64"):
        return "aarch64"
    return None


TARGET_OS = _detect_os()
TARGET_ARCH = _detect_arch()


def _malformed(text: str) -> ValueError:
    return ValueError(f"missing or malformed version output: {text}")


class Application(enum.Enum):
    """An external tool that can be located or downloaded."""

    SASS = "sass"
    TAILWIND_CSS = "tailwindcss"
    WASM_BINDGEN = "wasm-bindgen"
    WASM_OPT = "wasm-opt"

    def executable_name(self) -> str:
        """Base name of the executable without extension."""
        return self.value

    def path(self) -> str:
        """Path of the executable within the downloaded archive."""
        if TARGET_OS == "windows":
            return {
                Application.SASS: "sass.bat",
                Application.TAILWIND_CSS: "tailwindcss.exe",
                Application.WASM_BINDGEN: "wasm-bindgen.exe",
                Application.WASM_OPT: "bin/wasm-opt.exe",
            }[self]
        return {
            Application.SASS: "sass",
            Application.TAILWIND_CSS: "tailwindcss",
            Application.WASM_BINDGEN: "wasm-bindgen",
            Application.WASM_OPT: "bin/wasm-opt",
        }[self]

    def extra_paths(self) -> tuple[str, ...]:
        """Further files from the archive that the main binary needs to run."""
        if self is Application.SASS:
            if TARGET_OS == "windows":
                return ("src/dart.exe", "src/sass.snapshot")
            return ("src/dart", "src/sass.snapshot")
        if self is Application.WASM_OPT and TARGET_OS == "macos":
            return ("lib/libbinaryen.dylib",)
        return ()

    def default_version(self) -> str:
        """Version used when the user did not ask for one."""
        return {
            Application.SASS: "1.69.5",
            Application.TAILWIND_CSS: "3.3.5",
            Application.WASM_BINDGEN: "0.2.89",
            Application.WASM_OPT: "version_116",
        }[self]

    def url(
        self,
        version: str,
        target_os: Optional[str] = None,
        target_arch: Optional[str] = None,
    ) -> str:
        """Download URL of a release for the given (or current) platform."""
        os_name = target_os if target_os is not None else TARGET_OS
        arch = target_arch if target_arch is not None else TARGET_ARCH
        if os_name not in _SUPPORTED_OS:
            raise ValueError("unsupported OS")
        if arch not in _SUPPORTED_ARCH:
            raise ValueError("unsupported target architecture")

        if self is Application.SASS:
            base = f"https://github.com/sass/dart-sass/releases/download/{version}/dart-sass-{version}"
            if (os_name, arch) == ("windows", "x86_64"):
                return f"{base}-windows-x64.zip"
            if os_name in ("macos", "linux"):
                suffix = "x64" if arch == "x86_64" else "arm64"
                return f"{base}-{os_name}-{suffix}.tar.gz"
            raise ValueError(f"Unable to download Sass for {os_name} {arch}")

        if self is Application.TAILWIND_CSS:
            base = (
                "https://github.com/tailwindlabs/tailwindcss/releases/download/"
                f"v{version}/tailwindcss"
            )
            if (os_name, arch) == ("windows", "x86_64"):
                return f"{base}-windows-x64.exe"
            if os_name in ("macos", "linux"):
                suffix = "x64" if arch == "x86_64" else "arm64"
                return f"{base}-{os_name}-{suffix}"
            raise ValueError(f"Unable to download tailwindcss for {os_name} {arch}")

        if self is Application.WASM_BINDGEN:
            triples = {
                ("windows", "x86_64"): "x86_64-pc-windows-msvc",
                ("macos", "x86_64"): "x86_64-apple-darwin",
                ("macos", "aarch64"): "aarch64-apple-darwin",
                ("linux", "x86_64"): "x86_64-unknown-linux-musl",
                ("linux", "aarch64"): "aarch64-unknown-linux-gnu",
            }
            triple = triples.get((os_name, arch))
            if triple is None:
                raise ValueError(f"Unable to download wasm-bindgen for {os_name} {arch}")
            return (
                "https://github.com/rustwasm/wasm-bindgen/releases/download/"
                f"{version}/wasm-bindgen-{version}-{triple}.tar.gz"
            )

        base = f"https://github.com/WebAssembly/binaryen/releases/download/{version}/binaryen-{version}"
        if (os_name, arch) == ("macos", "aarch64"):
            return f"{base}-arm64-macos.tar.gz"
        return f"{base}-{arch}-{os_name}.tar.gz"

    def version_test(self) -> str:
        """The command-line argument that makes the tool print its version."""
        return "--help" if self is Application.TAILWIND_CSS else "--version"

    def format_version_output(self, text: str) -> str:
        """Extract the version from the output of the version command."""
        text = text.strip()
        if self is Application.SASS:
            words = text.split()
            if not words:
                raise _malformed(text)
            return words[0]
        if self is Application.TAILWIND_CSS:
            lines = (line.rstrip("\r") for line in text.split("\n"))
            first = next((line for line in lines if line), None)
            parts = first.split(" v") if first is not None else []
            if len(parts) < 2:
                raise _malformed(text)
            return parts[1]
        parts = text.split(" ")
        if self is Application.WASM_BINDGEN:
            if len(parts) < 2:
                raise _malformed(text)
            return parts[1]
        if len(parts) < 3:
            raise _malformed(text)
        return f"version_{parts[2]}"


@dataclass(frozen=True)
class HttpClientOptions:
    """How the HTTP client used for downloads validates certificates."""

    root_certificate: Optional[Path] = None
    accept_invalid_certificates: bool = False


def _is_executable(path: Path) -> bool:
    if not path.is_file():
        return False
    if os.name == "posix":
        return os.access(path, os.X_OK)
    return True


class _AppCache:
    """Remembers which tools were installed during this run, installing each once."""

    def __init__(self) -> None:
        self._done: set[tuple[Application, str]] = set()
        self._locks: dict[tuple[Application, str], asyncio.Lock] = {}

    async def install_once(
        self,
        app: Application,
        version: str,
        app_dir: Path,
        client_options: HttpClientOptions,
    ) -> None:
        key = (app, version)
        if key in self._done:
            return
        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            if key in self._done:
                return
            try:
                archive_path = await download(app, version, client_options)
            except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as err:
                raise RuntimeError(f"failed downloading release archive: {err}") from err
            await install(app, archive_path, app_dir)
            try:
                archive_path.unlink()
            except OSError as err:
                raise RuntimeError(f"failed deleting temporary archive: {err}") from err
            self._done.add(key)


_APP_CACHE = _AppCache()


async def get(
    app: Application,
    version: Optional[str] = None,
    offline: bool = False,
    client_options: Optional[HttpClientOptions] = None,
) -> Path:
    """Locate the application, downloading it if it is missing or the wrong version."""
    client_options = client_options if client_options is not None else HttpClientOptions()
    found = await find_system(app)
    if found is not None:
        path, detected_version = found
        if version is None:
            return path
        if version == detected_version:
            _log.info(
                "using system installed binary %s (%s): %s", app.value, detected_version, path
            )
            return path
        if offline:
            raise RuntimeError(
                f"couldn't find the required version ({version}) of the application "
                f"{app.value} (found: {detected_version}), unable to download in offline mode"
            )
        _log.debug(
            "tool version mismatch for %s (required: %s, system: %s)",
            app.value,
            version,
            detected_version,
        )

    if offline:
        raise RuntimeError(
            f"couldn't find application {app.value}, unable to download in offline mode"
        )

    directory = cache_dir()
    version = version if version is not None else app.default_version()
    app_dir = directory / f"{app.value}-{version}"
    bin_path = app_dir / app.path()

    if not _is_executable(bin_path):
        await _APP_CACHE.install_once(app, version, app_dir, client_options)

    _log.debug("Using %s (%s) from: %s", app.value, version, bin_path)
    return bin_path


async def find_system(app: Application) -> Optional[tuple[Path, str]]:
    """The system-installed binary and its version, or None if unusable."""
    located = shutil.which(app.executable_name())
    if located is None:
        return None
    path = Path(located)
    try:
        process = await asyncio.create_subprocess_exec(
            str(path),
            app.version_test(),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, _ = await process.communicate()
    except OSError:
        return None
    if process.returncode != 0:
        _log.debug("running command `%s %s` failed", path, app.version_test())
        return None
    try:
        system_version = app.format_version_output(stdout.decode("utf-8", errors="replace"))
    except ValueError:
        return None
    _log.debug("system version found for %s: %s", app.value, system_version)
    return path, system_version


def cache_dir() -> Path:
    """The cache directory for downloaded tools, created if needed."""
    path = Path(platformdirs.user_cache_dir(NAME, appauthor=False))
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as err:
        raise RuntimeError(f"failed creating cache directory: {err}") from err
    return path


def _ssl_setting(options: HttpClientOptions) -> Union[bool, ssl.SSLContext]:
    if options.accept_invalid_certificates:
        return False
    if options.root_certificate is None:
        return True
    try:
        pem = Path(options.root_certificate).read_bytes()
    except OSError as err:
        raise RuntimeError(
            f"Error reading certificate {options.root_certificate}: {err}"
        ) from err
    context = ssl.create_default_context()
    try:
        context.load_verify_locations(cadata=pem.decode("ascii"))
    except (ssl.SSLError, UnicodeDecodeError, ValueError) as err:
        raise RuntimeError(f"Error adding root certificate: {err}") from err
    return context


async def download(
    app: Application, version: str, client_options: Optional[HttpClientOptions] = None
) -> Path:
    """Download the release archive of the application into the cache directory."""
    client_options = client_options if client_options is not None else HttpClientOptions()
    _log.info("downloading %s %s", app.value, version)
    if client_options.accept_invalid_certificates:
        _log.warning(
            "Accept Invalid Certificates is set to true. This can open you up to MITM attacks."
        )

    url = app.url(version)
    temp_out = cache_dir() / f"{app.value}-{version}.tmp"
    ssl_setting = _ssl_setting(client_options)

    with open(temp_out, "wb") as handle:
        connector = aiohttp.TCPConnector(ssl=ssl_setting)
        async with aiohttp.ClientSession(connector=connector) as session:
            async with session.get(url) as response:
                if not 200 <= response.status < 300:
                    raise RuntimeError(
                        f"error downloading archive file: {response.status}\n{url}"
                    )
                async for chunk in response.content.iter_chunked(_CHUNK_SIZE):
                    handle.write(chunk)
    return temp_out


def _archive_kind(app: Application) -> ArchiveKind:
    if app is Application.SASS and TARGET_OS == "windows":
        return ArchiveKind.ZIP
    if app is Application.TAILWIND_CSS:
        return ArchiveKind.NONE
    return ArchiveKind.TAR_GZ


def _extract(app: Application, archive_path: Path, target_directory: Path) -> None:
    with Archive(archive_path, _archive_kind(app)) as archive:
        archive.extract_file(app.path(), target_directory)
        for extra in app.extra_paths():
            archive.reset()
            try:
                archive.extract_file(extra, target_directory)
            except (OSError, ValueError, tarfile.TarError, zipfile.BadZipFile, EOFError):
                _log.warning(
                    "attempted to extract '%s' from %s archive, but it is not present, "
                    "this could be due to version updates",
                    extra,
                    app.value,
                )


async def install(
    app: Application,
    archive_path: Union[str, os.PathLike],
    target_directory: Union[str, os.PathLike],
) -> None:
    """Extract the application from a downloaded archive into the target directory."""
    _log.info("installing %s", app.value)
    target = Path(target_directory)
    try:
        await asyncio.to_thread(_extract, app, Path(archive_path), target)
    except (OSError, ValueError, tarfile.TarError, zipfile.BadZipFile, EOFError) as err:
        raise RuntimeError(f"Could not extract files: {err}") from err

    main_executable = target / app.path()
    if not main_executable.exists():
        raise RuntimeError(
            f"Extracted application binary {main_executable} could not be found."
        )
    if not main_executable.is_file():
        raise RuntimeError(f"Extracted application binary {main_executable} is not a file")
    if not _is_executable(main_executable):
        raise RuntimeError(f"Extracted application binary {main_executable} is not executable.")