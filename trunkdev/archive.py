"""Extraction of single files from downloaded release archives."""

from __future__ import annotations

import enum
import logging
import os
import shutil
import stat
import tarfile
import zipfile
from pathlib import Path
from typing import BinaryIO, Optional, Union

_log = logging.getLogger(__name__)

_ZIP_SYSTEM_DOS = 0
_ZIP_SYSTEM_UNIX = 3
_DOS_READONLY = 0x01
_DOS_DIRECTORY = 0x10


class ArchiveKind(enum.Enum):
    """How the downloaded file is packed."""

    TAR_GZ = "tar.gz"
    ZIP = "zip"
    NONE = "none"


def _components(name: str) -> tuple[str, ...]:
    """Split a path into components the way a path walker sees them.

    Repeated separators and inner ``.`` segments vanish; a leading ``/`` or
    ``.`` stays as a component of its own.
    """
    parts: list[str] = []
    if name.startswith("/"):
        parts.append("/")
    elif name == "." or name.startswith("./"):
        parts.append(".")
    parts.extend(part for part in name.split("/") if part and part != ".")
    return tuple(parts)


def strip_first_component(name: str) -> str:
    """Drop the first path component, usually the folder an archive was made from."""
    return "/".join(_components(name)[1:])


def _enclosed_name(name: str) -> Optional[str]:
    """The entry name if it stays inside the extraction directory, else None."""
    if "\0" in name or name.startswith("/") or name.startswith("\\"):
        return None
    depth = 0
    for part in name.split("/"):
        if part == "..":
            if depth == 0:
                return None
            depth -= 1
        elif part and part != ".":
            depth += 1
    return name


def _zip_unix_mode(info: zipfile.ZipInfo) -> Optional[int]:
    """Unix permission bits recorded for a zip entry, if any can be derived."""
    if info.create_system == _ZIP_SYSTEM_UNIX:
        mode = info.external_attr >> 16
        return mode or None
    if info.create_system == _ZIP_SYSTEM_DOS:
        attrs = info.external_attr & 0xFF
        mode = 0o040775 if attrs & _DOS_DIRECTORY else 0o100664
        if attrs & _DOS_READONLY:
            mode &= ~0o222
        return mode
    return None


def _set_file_permissions(path: Path, mode: int, hint: object) -> None:
    """Apply permission bits; only has an effect on POSIX systems."""
    if os.name != "posix":
        return
    _log.debug("Setting permission of '%s' to %#o", hint, mode)
    os.chmod(path, stat.S_IMODE(mode))


def _write_output(reader: Optional[BinaryIO], file: str, target_directory: Path) -> Path:
    out = target_directory / file
    out.parent.mkdir(parents=True, exist_ok=True)
    with open(out, "wb") as handle:
        if reader is not None:
            shutil.copyfileobj(reader, handle)
    return out


class Archive:
    """A downloaded file from which named members can be extracted.

    Tar archives are read as a stream: once a member has been extracted,
    call :meth:`reset` before looking for another one.
    """

    def __init__(self, source: Union[str, os.PathLike, BinaryIO], kind: ArchiveKind) -> None:
        self.kind = ArchiveKind(kind)
        if isinstance(source, (str, os.PathLike)):
            self._file: BinaryIO = open(source, "rb")
            self._owns_file = True
        else:
            self._file = source
            self._owns_file = False
        self._tar: Optional[tarfile.TarFile] = None
        self._zip: Optional[zipfile.ZipFile] = None
        if self.kind is ArchiveKind.ZIP:
            try:
                self._zip = zipfile.ZipFile(self._file)
            except Exception:
                self.close()
                raise

    def __enter__(self) -> "Archive":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def extract_file(self, file: str, target_directory: Union[str, os.PathLike]) -> Path:
        """Extract ``file`` (named without the archive's top folder) into the directory."""
        target = Path(target_directory)
        if self.kind is ArchiveKind.TAR_GZ:
            return self._extract_tar(file, target)
        if self.kind is ArchiveKind.ZIP:
            return self._extract_zip(file, target)
        return self._extract_plain(file, target)

    def _extract_tar(self, file: str, target: Path) -> Path:
        if self._tar is None:
            self._tar = tarfile.open(fileobj=self._file, mode="r|gz")
        wanted = _components(file)
        while True:
            member = self._tar.next()
            if member is None:
                raise FileNotFoundError(f"file not found in archive: {file}")
            if _components(member.name)[1:] == wanted:
                break
        out = _write_output(self._tar.extractfile(member), file, target)
        _set_file_permissions(out, member.mode, file)
        return out

    def _extract_zip(self, file: str, target: Path) -> Path:
        assert self._zip is not None
        wanted = _components(file)
        for info in self._zip.infolist():
            name = _enclosed_name(info.filename)
            if name is None:
                raise ValueError(f"invalid entry path: {info.filename!r}")
            if _components(name)[1:] == wanted:
                break
        else:
            raise FileNotFoundError(f"file not found in archive: {file}")
        with self._zip.open(info) as reader:
            out = _write_output(reader, file, target)
        mode = _zip_unix_mode(info)
        if mode is not None:
            _set_file_permissions(out, mode, file)
        return out

    def _extract_plain(self, file: str, target: Path) -> Path:
        target.mkdir(exist_ok=True)
        out = target / file
        with open(out, "wb") as handle:
            shutil.copyfileobj(self._file, handle)
        _set_file_permissions(out, 0o755, out)
        return out

    def reset(self) -> "Archive":
        """Rewind a tar archive so that it can be searched again."""
        if self.kind is ArchiveKind.TAR_GZ:
            if self._tar is not None:
                self._tar.close()
                self._tar = None
            self._file.seek(0)
        return self

    def close(self) -> None:
        """Release the archive and, if it was opened here, its file."""
        if self._tar is not None:
            self._tar.close()
            self._tar = None
        if self._zip is not None:
            self._zip.close()
            self._zip = None
        if self._owns_file:
            self._file.close()