"""Periodic check for newer released versions of this tool."""

from __future__ import annotations

import asyncio
import json
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterable, Optional

import aiohttp
import platformdirs
import semver

from trunkdev.version import NAME, VERSION

_log = logging.getLogger(__name__)

CHECK_PERIOD = timedelta(days=1)
_INDEX_URL = "https://pypi.org/pypi/{name}/json"


@dataclass(frozen=True)
class Versions:
    """The newest known release and the newest version including pre-releases."""

    release: Optional[semver.Version] = None
    prerelease: Optional[semver.Version] = None

    def to_json(self) -> dict:
        data = {}
        if self.release is not None:
            data["release"] = str(self.release)
        if self.prerelease is not None:
            data["prerelease"] = str(self.prerelease)
        return data

    @classmethod
    def from_json(cls, data: dict) -> "Versions":
        if not isinstance(data, dict):
            raise ValueError("versions must be a JSON object")
        release = data.get("release")
        prerelease = data.get("prerelease")
        return cls(
            release=semver.Version.parse(release) if release is not None else None,
            prerelease=semver.Version.parse(prerelease) if prerelease is not None else None,
        )


def state_file() -> Path:
    """Location of the file that records the last update check."""
    return Path(platformdirs.user_state_dir(NAME)) / "update.json"


def _format_time(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _parse_time(text: str) -> datetime:
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    moment = datetime.fromisoformat(text)
    if moment.tzinfo is None:
        raise ValueError("timestamp without offset")
    return moment


def need_check(path: Optional[Path] = None, now: Optional[datetime] = None) -> Optional[Versions]:
    """Return the recorded versions, or None when a fresh check is due."""
    file = path if path is not None else state_file()
    now = now if now is not None else datetime.now(timezone.utc)
    try:
        raw = Path(file).read_bytes()
    except FileNotFoundError:
        return None
    except OSError as err:
        _log.debug("Failed to check update state file (%s), skipping: %s", file, err)
        return Versions()

    try:
        state = json.loads(raw)
        last_check = _parse_time(state["last_check"])
        versions = Versions.from_json(state["versions"])
    except (ValueError, KeyError, TypeError):
        return None

    diff = now - last_check
    _log.debug("Time since last check: %s", diff)
    if diff > CHECK_PERIOD:
        return None
    return versions


def record_checked(
    versions: Versions, path: Optional[Path] = None, now: Optional[datetime] = None
) -> None:
    """Record that a check was performed; errors are logged and ignored."""
    file = Path(path if path is not None else state_file())
    now = now if now is not None else datetime.now(timezone.utc)
    state = json.dumps({"last_check": _format_time(now), "versions": versions.to_json()})
    try:
        file.parent.mkdir(parents=True, exist_ok=True)
    except OSError as err:
        _log.debug("Failed to create parent directory for update state (%s): %s", file.parent, err)
        return
    try:
        file.write_text(state, encoding="utf-8")
    except OSError as err:
        _log.debug("Failed to write update state file (%s): %s", file, err)


def latest_versions(version_strings: Iterable[str]) -> Versions:
    """Pick the newest release and newest overall version, skipping unparseable ones."""
    parsed = []
    for text in version_strings:
        try:
            parsed.append(semver.Version.parse(text))
        except ValueError:
            continue
    releases = [v for v in parsed if not v.prerelease]
    return Versions(
        release=max(releases) if releases else None,
        prerelease=max(parsed) if parsed else None,
    )


async def most_recent() -> Versions:
    """Ask the package index for the versions that are not yanked."""
    _log.debug("Checking for updates")
    timeout = aiohttp.ClientTimeout(total=1)
    headers = {"User-Agent": f"{NAME}/{VERSION}"}
    async with aiohttp.ClientSession(timeout=timeout, headers=headers) as session:
        async with session.get(_INDEX_URL.format(name=NAME)) as response:
            response.raise_for_status()
            payload = await response.json()

    releases = payload.get("releases", {})
    available = (
        number
        for number, files in releases.items()
        if not (files and all(entry.get("yanked") for entry in files))
    )
    return latest_versions(available)


def announce_version(
    versions: Versions, current: Optional[str] = None
) -> Optional[semver.Version]:
    """Log and return a newer version than ``current``, if there is one."""
    current_text = current if current is not None else VERSION
    try:
        current_version = semver.Version.parse(current_text)
    except (ValueError, TypeError):
        _log.debug("Failed to parse the current version (%s)", current_text)
        return None

    newest = versions.prerelease if current_version.prerelease else versions.release
    if newest is None:
        return None

    _log.debug("Current: %s, Most recent: %s", current_version, newest)
    if newest > current_version:
        _log.info("Found an update of %s: %s -> %s", NAME, current_text, newest)
        return newest
    return None


def perform_update_check() -> None:
    """Consult the recorded state, refresh it if due, and announce updates."""
    _log.debug("Performing update check")
    versions = need_check()
    if versions is None:
        try:
            versions = asyncio.run(most_recent())
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError, ValueError) as err:
            _log.debug("Failed to check for new version: %s", err)
            return
        _log.debug("New versions: %s", versions)
        record_checked(versions)
    else:
        _log.debug("No refresh needed")
    announce_version(versions)


def update_check(skip: bool) -> None:
    """Run the update check in the background unless ``skip`` is set."""
    if skip:
        return
    _log.debug("Spawning update check")
    threading.Thread(target=perform_update_check, name="update-check", daemon=True).start()