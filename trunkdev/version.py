"""Version requirements and the check that the running tool satisfies them."""

from __future__ import annotations

import enum
import logging
import re
from dataclasses import dataclass
from importlib import metadata
from typing import Optional, Union

import semver

_log = logging.getLogger(__name__)

NAME = "trunkdev"


def _installed_version() -> str:
    try:
        return metadata.version(NAME)
    except metadata.PackageNotFoundError:
        return ""


VERSION = _installed_version()

_WILDCARDS = frozenset({"*", "x", "X"})

_COMPARATOR = re.compile(
    r"""
    ^(?P<op>=|>=|>|<=|<|~|\^)?\s*
    (?P<major>\d+|[*xX])
    (?:\.(?P<minor>\d+|[*xX])
      (?:\.(?P<patch>\d+|[*xX])
        (?:-(?P<pre>[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?
        (?:\+(?P<build>[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?
      )?
    )?$
    """,
    re.VERBOSE,
)


class _Op(enum.Enum):
    EXACT = "="
    GREATER = ">"
    GREATER_EQ = ">="
    LESS = "<"
    LESS_EQ = "<="
    TILDE = "~"
    CARET = "^"
    WILDCARD = "*"


def _pre_key(pre: tuple[str, ...]) -> tuple:
    """Ordering key for pre-release identifiers; no pre-release sorts highest."""
    if not pre:
        return (1, ())
    return (0, tuple((0, int(part), "") if part.isdigit() else (1, 0, part) for part in pre))


@dataclass(frozen=True)
class _Version:
    major: int
    minor: int
    patch: int
    pre: tuple[str, ...]


@dataclass(frozen=True)
class _Comparator:
    op: _Op
    major: int
    minor: Optional[int] = None
    patch: Optional[int] = None
    pre: tuple[str, ...] = ()

    def __str__(self) -> str:
        text = str(self.major)
        if self.minor is not None:
            text += f".{self.minor}"
            if self.patch is not None:
                text += f".{self.patch}"
        if self.pre:
            text += "-" + ".".join(self.pre)
        if self.op is _Op.WILDCARD:
            return text + ".*"
        return self.op.value + text

    def _exact(self, ver: _Version) -> bool:
        if ver.major != self.major:
            return False
        if self.minor is not None and ver.minor != self.minor:
            return False
        if self.patch is not None and ver.patch != self.patch:
            return False
        return ver.pre == self.pre

    def _greater(self, ver: _Version) -> bool:
        if ver.major != self.major:
            return ver.major > self.major
        if self.minor is None:
            return False
        if ver.minor != self.minor:
            return ver.minor > self.minor
        if self.patch is None:
            return False
        if ver.patch != self.patch:
            return ver.patch > self.patch
        return _pre_key(ver.pre) > _pre_key(self.pre)

    def _less(self, ver: _Version) -> bool:
        if ver.major != self.major:
            return ver.major < self.major
        if self.minor is None:
            return False
        if ver.minor != self.minor:
            return ver.minor < self.minor
        if self.patch is None:
            return False
        if ver.patch != self.patch:
            return ver.patch < self.patch
        return _pre_key(ver.pre) < _pre_key(self.pre)

    def _tilde(self, ver: _Version) -> bool:
        if ver.major != self.major:
            return False
        if self.minor is not None and ver.minor != self.minor:
            return False
        if self.patch is not None and ver.patch != self.patch:
            return ver.patch > self.patch
        return _pre_key(ver.pre) >= _pre_key(self.pre)

    def _caret(self, ver: _Version) -> bool:
        if ver.major != self.major:
            return False
        if self.minor is None:
            return True
        if self.patch is None:
            if self.major > 0:
                return ver.minor >= self.minor
            return ver.minor == self.minor
        if self.major > 0:
            if ver.minor != self.minor:
                return ver.minor > self.minor
            if ver.patch != self.patch:
                return ver.patch > self.patch
        elif self.minor > 0:
            if ver.minor != self.minor:
                return False
            if ver.patch != self.patch:
                return ver.patch > self.patch
        elif ver.minor != self.minor or ver.patch != self.patch:
            return False
        return _pre_key(ver.pre) >= _pre_key(self.pre)

    def matches(self, ver: _Version) -> bool:
        if self.op in (_Op.EXACT, _Op.WILDCARD):
            return self._exact(ver)
        if self.op is _Op.GREATER:
            return self._greater(ver)
        if self.op is _Op.GREATER_EQ:
            return self._exact(ver) or self._greater(ver)
        if self.op is _Op.LESS:
            return self._less(ver)
        if self.op is _Op.LESS_EQ:
            return self._exact(ver) or self._less(ver)
        if self.op is _Op.TILDE:
            return self._tilde(ver)
        return self._caret(ver)

    def allows_prerelease_of(self, ver: _Version) -> bool:
        return (
            bool(self.pre)
            and self.major == ver.major
            and self.minor == ver.minor
            and self.patch == ver.patch
        )


def _parse_comparator(text: str) -> _Comparator:
    match = _COMPARATOR.match(text.strip())
    if match is None:
        raise ValueError(f"invalid version requirement: {text.strip()!r}")
    if match["major"] in _WILDCARDS:
        raise ValueError(f"unexpected wildcard in version requirement: {text.strip()!r}")

    numbers: list[int] = []
    wildcard = False
    for part in (match["major"], match["minor"], match["patch"]):
        if part is None:
            break
        if part in _WILDCARDS:
            wildcard = True
        elif wildcard:
            raise ValueError(f"unexpected number after wildcard: {text.strip()!r}")
        else:
            numbers.append(int(part))
    if wildcard and match["pre"]:
        raise ValueError(f"unexpected pre-release after wildcard: {text.strip()!r}")

    op_text = match["op"]
    if op_text is None or (op_text == "=" and wildcard):
        op = _Op.WILDCARD if wildcard else _Op.CARET
    else:
        op = _Op(op_text)

    numbers += [None] * (3 - len(numbers))
    pre = tuple(match["pre"].split(".")) if match["pre"] else ()
    return _Comparator(op, numbers[0], numbers[1], numbers[2], pre)


def _coerce_version(version: Union[str, semver.Version]) -> _Version:
    if isinstance(version, str):
        version = semver.Version.parse(version)
    pre = tuple(version.prerelease.split(".")) if version.prerelease else ()
    return _Version(version.major, version.minor, version.patch, pre)


@dataclass(frozen=True)
class VersionRequirement:
    """A set of comparators that a version must all satisfy."""

    comparators: tuple[_Comparator, ...] = ()

    @property
    def is_star(self) -> bool:
        return not self.comparators

    def matches(self, version: Union[str, semver.Version]) -> bool:
        """Whether the version satisfies this requirement."""
        ver = _coerce_version(version)
        if not all(cmp.matches(ver) for cmp in self.comparators):
            return False
        if not ver.pre:
            return True
        return any(cmp.allows_prerelease_of(ver) for cmp in self.comparators)

    def __str__(self) -> str:
        if self.is_star:
            return "*"
        return ", ".join(str(cmp) for cmp in self.comparators)


def parse_requirement(text: str) -> VersionRequirement:
    """Parse a requirement such as ``>=0.19.0, <0.21`` or ``*``."""
    stripped = text.strip()
    if not stripped:
        raise ValueError("empty version requirement")
    if stripped in _WILDCARDS:
        return VersionRequirement()
    return VersionRequirement(tuple(_parse_comparator(part) for part in stripped.split(",")))


class VersionMismatchError(Exception):
    """The running version does not satisfy the project's requirement."""

    def __init__(self, required: VersionRequirement, actual: object) -> None:
        self.required = required
        self.actual = actual
        super().__init__(
            f"Project requires a trunk version of '{required}', "
            f"the current trunk version is: '{actual}'"
        )


def enforce_version_with(
    required: Union[str, VersionRequirement], actual: Union[str, semver.Version]
) -> None:
    """Raise VersionMismatchError unless ``actual`` satisfies ``required``."""
    if isinstance(required, str):
        required = parse_requirement(required)
    if isinstance(actual, str):
        actual = semver.Version.parse(actual)
    _log.debug("Enforce version - actual: %s, required: %s", actual, required)

    # A bare star accepts everything, pre-releases included.
    if required.is_star:
        return

    outcome = required.matches(actual)
    _log.debug(
        "Current version: %s, required version: %s, matches: %s", actual, required, outcome
    )
    if not outcome:
        raise VersionMismatchError(required, actual)


def enforce_version(required: Union[str, VersionRequirement]) -> None:
    """Check the installed version of this tool against ``required``."""
    try:
        actual = semver.Version.parse(VERSION)
    except (ValueError, TypeError) as err:
        _log.warning("Unable to parse trunk version, skipping version check: %s", err)
        return
    enforce_version_with(required, actual)