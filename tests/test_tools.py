import io
import os
import tarfile

import pytest

from trunkdev import tools
from trunkdev.tools import Application, HttpClientOptions


def _make_tar(path, members):
    with tarfile.open(path, "w:gz") as tar:
        for name, data in members.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = 0o755
            tar.addfile(info, io.BytesIO(data))


@pytest.mark.parametrize(
    "app, text, expected",
    [
        (Application.WASM_OPT, "wasm-opt version 101 (version_101)", "version_101"),
        (Application.WASM_OPT, "wasm-opt version 101", "version_101"),
        (Application.WASM_BINDGEN, "wasm-bindgen 0.2.75", "0.2.75"),
        (Application.WASM_BINDGEN, "wasm-bindgen 0.2.74 (27c7a4d06)", "0.2.74"),
        (Application.SASS, "1.37.5", "1.37.5"),
        (Application.SASS, "1.37.5 compiled with dart2js 2.18.4", "1.37.5"),
        (Application.TAILWIND_CSS, "tailwindcss v3.3.2", "3.3.2"),
    ],
)
def test_format_version_output(app, text, expected):
    assert app.format_version_output(text) == expected


def test_tailwind_version_skips_leading_blank_lines():
    text = "\n\ntailwindcss v3.3.5\n\nUsage: tailwindcss build"
    assert Application.TAILWIND_CSS.format_version_output(text) == "3.3.5"


@pytest.mark.parametrize(
    "app, text",
    [
        (Application.SASS, "   "),
        (Application.WASM_BINDGEN, "wasm-bindgen"),
        (Application.WASM_OPT, "wasm-opt version"),
        (Application.TAILWIND_CSS, "no version here"),
    ],
)
def test_format_version_output_malformed(app, text):
    with pytest.raises(ValueError, match="malformed version output"):
        app.format_version_output(text)


@pytest.mark.parametrize(
    "app, os_name, arch, expected",
    [
        (
            Application.SASS,
            "windows",
            "x86_64",
            "https://github.com/sass/dart-sass/releases/download/1.69.5/dart-sass-1.69.5-windows-x64.zip",
        ),
        (
            Application.SASS,
            "linux",
            "aarch64",
            "https://github.com/sass/dart-sass/releases/download/1.69.5/dart-sass-1.69.5-linux-arm64.tar.gz",
        ),
        (
            Application.TAILWIND_CSS,
            "macos",
            "x86_64",
            "https://github.com/tailwindlabs/tailwindcss/releases/download/v1.69.5/tailwindcss-macos-x64",
        ),
        (
            Application.WASM_BINDGEN,
            "linux",
            "x86_64",
            "https://github.com/rustwasm/wasm-bindgen/releases/download/1.69.5/wasm-bindgen-1.69.5-x86_64-unknown-linux-musl.tar.gz",
        ),
        (
            Application.WASM_OPT,
            "macos",
            "aarch64",
            "https://github.com/WebAssembly/binaryen/releases/download/1.69.5/binaryen-1.69.5-arm64-macos.tar.gz",
        ),
        (
            Application.WASM_OPT,
            "linux",
            "x86_64",
            "https://github.com/WebAssembly/binaryen/releases/download/1.69.5/binaryen-1.69.5-x86_64-linux.tar.gz",
        ),
    ],
)
def test_url(app, os_name, arch, expected):
    assert app.url("1.69.5", os_name, arch) == expected


def test_url_unsupported_combinations():
    with pytest.raises(ValueError, match="Unable to download wasm-bindgen"):
        Application.WASM_BINDGEN.url("0.2.89", "windows", "aarch64")
    with pytest.raises(ValueError, match="unsupported OS"):
        Application.SASS.url("1.0.0", "freebsd", "x86_64")
    with pytest.raises(ValueError, match="unsupported target architecture"):
        Application.SASS.url("1.0.0", "linux", "riscv64")


def test_paths_depend_on_target_os(monkeypatch):
    monkeypatch.setattr(tools, "TARGET_OS", "windows")
    assert Application.SASS.path() == "sass.bat"
    assert Application.WASM_OPT.path() == "bin/wasm-opt.exe"
    assert Application.SASS.extra_paths() == ("src/dart.exe", "src/sass.snapshot")
    monkeypatch.setattr(tools, "TARGET_OS", "macos")
    assert Application.WASM_OPT.path() == "bin/wasm-opt"
    assert Application.WASM_OPT.extra_paths() == ("lib/libbinaryen.dylib",)
    monkeypatch.setattr(tools, "TARGET_OS", "linux")
    assert Application.WASM_OPT.extra_paths() == ()
    assert Application.TAILWIND_CSS.version_test() == "--help"
    assert Application.WASM_BINDGEN.version_test() == "--version"


@pytest.mark.asyncio
async def test_install_tar_gz(tmp_path, monkeypatch):
    monkeypatch.setattr(tools, "TARGET_OS", "linux")
    archive = tmp_path / "bindgen.tar.gz"
    _make_tar(archive, {"wasm-bindgen-0.2.89/wasm-bindgen": b"binary"})
    target = tmp_path / "out"
    await tools.install(Application.WASM_BINDGEN, archive, target)
    assert (target / "wasm-bindgen").read_bytes() == b"binary"


@pytest.mark.asyncio
async def test_install_with_extra_paths(tmp_path, monkeypatch):
    monkeypatch.setattr(tools, "TARGET_OS", "macos")
    archive = tmp_path / "binaryen.tar.gz"
    _make_tar(
        archive,
        {
            "binaryen-version_116/lib/libbinaryen.dylib": b"library",
            "binaryen-version_116/bin/wasm-opt": b"optimizer",
        },
    )
    target = tmp_path / "out"
    await tools.install(Application.WASM_OPT, archive, target)
    assert (target / "bin" / "wasm-opt").read_bytes() == b"optimizer"
    assert (target / "lib" / "libbinaryen.dylib").read_bytes() == b"library"


@pytest.mark.asyncio
async def test_install_tolerates_missing_extras(tmp_path, monkeypatch):
    monkeypatch.setattr(tools, "TARGET_OS", "linux")
    archive = tmp_path / "sass.tar.gz"
    _make_tar(archive, {"dart-sass/sass": b"script"})
    target = tmp_path / "out"
    await tools.install(Application.SASS, archive, target)
    assert (target / "sass").read_bytes() == b"script"
    assert not (target / "src" / "dart").exists()


@pytest.mark.asyncio
async def test_install_plain_binary(tmp_path, monkeypatch):
    monkeypatch.setattr(tools, "TARGET_OS", "linux")
    download = tmp_path / "tailwindcss.tmp"
    download.write_bytes(b"tailwind binary")
    target = tmp_path / "out"
    await tools.install(Application.TAILWIND_CSS, download, target)
    installed = target / "tailwindcss"
    assert installed.read_bytes() == b"tailwind binary"
    if os.name == "posix":
        assert installed.stat().st_mode & 0o777 == 0o755


@pytest.mark.asyncio
async def test_install_missing_member(tmp_path, monkeypatch):
    monkeypatch.setattr(tools, "TARGET_OS", "linux")
    archive = tmp_path / "empty.tar.gz"
    _make_tar(archive, {"top/other": b"x"})
    with pytest.raises(RuntimeError, match="Could not extract files"):
        await tools.install(Application.WASM_BINDGEN, archive, tmp_path / "out")


@pytest.mark.asyncio
async def test_get_offline_without_system_tool(tmp_path, monkeypatch):
    monkeypatch.setenv("PATH", str(tmp_path))
    assert await tools.find_system(Application.SASS) is None
    with pytest.raises(RuntimeError, match="unable to download in offline mode"):
        await tools.get(Application.SASS, None, True, HttpClientOptions())


def _fake_tool(directory, name, body):
    script = directory / name
    script.write_text("#!/bin/sh\n" + body + "\n")
    script.chmod(0o755)
    return script


@pytest.mark.asyncio
async def test_find_system_and_get_with_system_tool(tmp_path, monkeypatch):
    script = _fake_tool(tmp_path, "wasm-bindgen", "echo 'wasm-bindgen 0.2.75 (abc1234)'")
    monkeypatch.setenv("PATH", str(tmp_path))

    found = await tools.find_system(Application.WASM_BINDGEN)
    assert found == (script, "0.2.75")

    assert await tools.get(Application.WASM_BINDGEN, "0.2.75", True) == script
    assert await tools.get(Application.WASM_BINDGEN, None, True) == script
    with pytest.raises(RuntimeError, match=r"required version \(0\.2\.99\)"):
        await tools.get(Application.WASM_BINDGEN, "0.2.99", True)


@pytest.mark.asyncio
async def test_find_system_failing_command(tmp_path, monkeypatch):
    _fake_tool(tmp_path, "wasm-opt", "exit 1")
    monkeypatch.setenv("PATH", str(tmp_path))
    assert await tools.find_system(Application.WASM_OPT) is None