"""Strict MAJOR.MINOR.PATCH version strings."""

from __future__ import annotations

import re

from dexsync.errors import VersionFormatError

_SEMVER = re.compile(r"^(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)$")


def parse_version(value: object) -> tuple[int, int, int]:
    if not isinstance(value, str):
        raise VersionFormatError(f"Version must be a string, got {type(value).__name__}")
    match = _SEMVER.match(value.strip())
    if match is None:
        raise VersionFormatError(f"Malformed version string: {value!r}")
    major, minor, patch = (int(part) for part in match.groups())
    return major, minor, patch


def compare_versions(a: str, b: str) -> int:
    """Return -1, 0 or 1; raises ``VersionFormatError`` on malformed input."""
    left, right = parse_version(a), parse_version(b)
    return (left > right) - (left < right)


def bump(version: str, part: str) -> str:
    major, minor, patch = parse_version(version)
    if part == "major":
        return f"{major + 1}.0.0"
    if part == "minor":
        return f"{major}.{minor + 1}.0"
    if part == "patch":
        return f"{major}.{minor}.{patch + 1}"
    raise ValueError(f"Unknown version part: {part}")


def salvage_version(value: object) -> str | None:
    """Best-effort ``MAJOR.MINOR.PATCH`` from the leading numbers of a malformed string."""
    numbers = [int(part) for part in re.findall(r"\d+", str(value))[:3]]
    if not numbers:
        return None
    numbers += [0] * (3 - len(numbers))
    return "{}.{}.{}".format(*numbers)
