from __future__ import annotations

"""
Semantic version ordering for modules, the core application and the host.

Parsing goes through packaging.version; the result is reduced to a strict
major.minor.patch triple. Tags such as "v0.0.3", pre-release and build
suffixes ("1.2.0-dev", "1.2.0+abc") and short forms ("2025", "1.2") are
normalized; anything else is rejected.
"""

import re
from dataclasses import dataclass
from typing import Optional

from packaging.version import InvalidVersion, Version

_SUFFIX_RE = re.compile(r"[-+]")


@dataclass(frozen=True, order=True)
class SemVer:
    major: int
    minor: int = 0
    patch: int = 0

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"


def _pep440(s: str) -> Version:
    try:
        return Version(s)
    except InvalidVersion:
        # Git-style tags ("1.2.0-dev.abc") that PEP 440 does not accept.
        return Version(_SUFFIX_RE.split(s, maxsplit=1)[0])


def parse_version(raw: object) -> SemVer:
    if isinstance(raw, SemVer):
        return raw
    s = str(raw or "").strip()
    try:
        v = _pep440(s)
    except InvalidVersion as e:
        raise ValueError(f"invalid version: {raw!r}") from e
    major, minor, patch = (tuple(v.release) + (0, 0))[:3]
    return SemVer(major, minor, patch)


def try_parse_version(raw: object) -> Optional[SemVer]:
    try:
        return parse_version(raw)
    except ValueError:
        return None


def normalize_version(raw: object) -> str:
    return str(parse_version(raw))


def satisfies_minimum(version: object, minimum: Optional[str]) -> bool:
    """Minimum-version semantics: no minimum means any version."""
    if not minimum:
        return True
    return parse_version(version) >= parse_version(minimum)


def is_newer(candidate: object, current: object) -> bool:
    return parse_version(candidate) > parse_version(current)
