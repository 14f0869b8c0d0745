"""npm semantic-version predicates.

Thin wrappers around ``nodesemver`` (a port of npm's ``semver`` package).
Every function accepts arbitrary registry data: malformed versions or ranges
yield ``False``, ``None`` or an empty list instead of raising.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from functools import cmp_to_key

import nodesemver

# Same shape npm's semver.coerce() looks for: up to three numeric parts
# not embedded in a longer run of digits.
_COERCE_RE = re.compile(r"(?:^|[^\d])(\d{1,16})(?:\.(\d{1,16}))?(?:\.(\d{1,16}))?(?:$|[^\d])")


def is_valid(version: str | None) -> bool:
    """Check whether a string is a strict semantic version."""
    if not isinstance(version, str) or not version.strip():
        return False
    try:
        return nodesemver.valid(version, loose=False) is not None
    except (ValueError, TypeError, AttributeError):
        return False


def coerce(text: str | None) -> str | None:
    """Extract a ``major.minor.patch`` version from loose text.

    ``"^4.17"`` becomes ``"4.17.0"``, ``"v2"`` becomes ``"2.0.0"``.

    Returns:
        Normalized version string, or None if the text holds no number.
    """
    if not isinstance(text, str):
        return None
    match = _COERCE_RE.search(text)
    if not match:
        return None
    major, minor, patch = (int(part or 0) for part in match.groups())
    return f"{major}.{minor}.{patch}"


def major(version: str | None) -> int | None:
    """Return the major component of a (coercible) version."""
    coerced = coerce(version)
    if coerced is None:
        return None
    return int(coerced.split(".", 1)[0])


def _compare(first: str, second: str) -> int:
    return nodesemver.compare(first, second, loose=False)


def satisfies(version: str, version_range: str) -> bool:
    """Check whether a version satisfies an npm range (``^1.2.0``, ``>=1 <2`` ...)."""
    if not is_valid(version) or not isinstance(version_range, str):
        return False
    try:
        return bool(nodesemver.satisfies(version, version_range, loose=False))
    except (ValueError, TypeError, AttributeError):
        return False


def versions_in_range(all_versions: Iterable[str], version_range: str) -> list[str]:
    """Return the versions satisfying a range, in input order."""
    return [v for v in all_versions if satisfies(v, version_range)]


def max_satisfying(all_versions: Iterable[str], version_range: str) -> str | None:
    """Return the highest version satisfying a range, or None."""
    candidates = versions_in_range(all_versions, version_range)
    if not candidates:
        return None
    return max(candidates, key=cmp_to_key(_compare))


def greater_than(first: str, second: str) -> bool:
    """Check whether ``first`` is strictly newer than ``second``."""
    if not is_valid(first) or not is_valid(second):
        return False
    try:
        return bool(nodesemver.gt(first, second, loose=False))
    except (ValueError, TypeError, AttributeError):
        return False


def sort_versions(all_versions: Iterable[str], reverse: bool = False) -> list[str]:
    """Sort valid versions by semver precedence; invalid entries are dropped."""
    valid = {v for v in all_versions if is_valid(v)}
    return sorted(valid, key=cmp_to_key(_compare), reverse=reverse)


def is_breaking_upgrade(from_version: str, to_version: str) -> bool:
    """Check whether moving between two versions crosses a major version.

    Unparsable input counts as breaking.
    """
    from_major = major(from_version)
    to_major = major(to_version)
    if from_major is None or to_major is None:
        return True
    return to_major > from_major


def same_major_version(first: str, second: str) -> bool:
    """Check whether two versions share a major component."""
    first_major = major(first)
    second_major = major(second)
    if first_major is None or second_major is None:
        return False
    return first_major == second_major
