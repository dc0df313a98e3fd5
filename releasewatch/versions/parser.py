"""Version string parsing and ordering.

Version strings arrive from scrapers, RSS feeds, forum posts and operators,
so the parser never raises: anything it cannot read degrades to zero-valued
components and still sorts against every other version.
"""

import functools
import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Optional, Union

LEADING_INT = re.compile(r"^\s*(\d+)")
PREFIX_MARKER = re.compile(r"^(v|r|version|ver|release)[\s\-_]*(?=\d)", re.IGNORECASE)
PRERELEASE_TAG = re.compile(r"^(alpha|beta|rc|preview|pre|dev|canary)", re.IGNORECASE)


class UpdateType(str, Enum):
    """Coarse size of a version bump, used for badges only."""

    MAJOR = "major"
    MINOR = "minor"
    PATCH = "patch"


@dataclass(frozen=True)
class ParsedVersion:
    """Structured form of a version string."""

    major: int = 0
    minor: int = 0
    patch: int = 0
    prerelease: Optional[str] = None
    build: Optional[str] = None
    raw: str = ""


VersionLike = Union[str, ParsedVersion, None]


def _to_int(segment: str) -> int:
    match = LEADING_INT.match(segment)
    return int(match.group(1)) if match else 0


def parse(raw: Optional[str]) -> ParsedVersion:
    """
    Parse a version string such as ``1.2.3``, ``v1.2``, ``r32.1.4`` or ``1.0.0-beta+42``.

    Args:
        raw: Version string (None and "" are accepted)

    Returns:
        ParsedVersion; unreadable segments are 0
    """
    if not raw:
        return ParsedVersion(raw=raw or "")

    cleaned = raw.strip()
    if cleaned[:1] in ("v", "V", "r", "R"):
        cleaned = cleaned[1:].strip()

    build = None
    if "+" in cleaned:
        cleaned, build = cleaned.split("+", 1)

    prerelease = None
    if "-" in cleaned:
        cleaned, prerelease = cleaned.split("-", 1)

    parts = [_to_int(p) for p in cleaned.split(".")] + [0, 0, 0]

    return ParsedVersion(
        major=parts[0],
        minor=parts[1],
        patch=parts[2],
        prerelease=prerelease or None,
        build=build or None,
        raw=raw,
    )


def _as_parsed(value: VersionLike) -> ParsedVersion:
    if isinstance(value, ParsedVersion):
        return value
    return parse(value)


def compare(a: VersionLike, b: VersionLike) -> int:
    """
    Order two versions.

    Numeric triple first; on a tie a release outranks a prerelease of the
    same triple and two prereleases compare as strings. Build metadata is
    ignored.

    Returns:
        1 if a > b, -1 if a < b, 0 if equal
    """
    va = _as_parsed(a)
    vb = _as_parsed(b)

    for left, right in (
        (va.major, vb.major),
        (va.minor, vb.minor),
        (va.patch, vb.patch),
    ):
        if left != right:
            return 1 if left > right else -1

    if va.prerelease is None and vb.prerelease is not None:
        return 1
    if va.prerelease is not None and vb.prerelease is None:
        return -1
    if va.prerelease is not None and vb.prerelease is not None:
        if va.prerelease > vb.prerelease:
            return 1
        if va.prerelease < vb.prerelease:
            return -1

    return 0


def is_newer(candidate: VersionLike, baseline: VersionLike) -> bool:
    """True if candidate is strictly newer than baseline."""
    return compare(candidate, baseline) == 1


def classify_update_type(old: VersionLike, new: VersionLike) -> UpdateType:
    """
    Classify a version change as major, minor or patch.

    Not an ordering: a downgrade still classifies as patch.
    """
    old_v = _as_parsed(old)
    new_v = _as_parsed(new)

    if new_v.major > old_v.major:
        return UpdateType.MAJOR
    if new_v.minor > old_v.minor:
        return UpdateType.MINOR
    return UpdateType.PATCH


version_sort_key = functools.cmp_to_key(compare)


def sort_versions_descending(values: Iterable[str]) -> List[str]:
    """Sort version strings newest first."""
    return sorted(values, key=version_sort_key, reverse=True)


def normalize_version(raw: Optional[str], product_name: str = "") -> str:
    """
    Canonicalize a scraped version before storing it.

    Strips a leading product-name prefix (``cobra_v125`` for "Cobra") and a
    ``v``/``r``/``version``/``ver``/``release`` marker that directly precedes
    a digit, so "Version 2.1" and "v2.1" merge into the same record.

    Args:
        raw: Version string as detected
        product_name: Name of the product the version belongs to

    Returns:
        Normalized version string
    """
    if not raw:
        return raw or ""

    normalized = raw.strip()

    name_prefix = re.sub(r"[^a-z0-9]", "", product_name.lower())
    if name_prefix:
        normalized = re.sub(
            rf"^{re.escape(name_prefix)}[_\-\s]*(v|version)?[_\-\s]*",
            "",
            normalized,
            flags=re.IGNORECASE,
        )

    normalized = PREFIX_MARKER.sub("", normalized)
    return normalized.strip()


def is_prerelease(version: Optional[str]) -> bool:
    """True if the version carries an alpha/beta/rc/preview/pre/dev/canary tag."""
    if not version:
        return False
    cleaned = re.sub(r"^[vr]|version\s*", "", version, count=1, flags=re.IGNORECASE).strip()
    parts = re.split(r"[-_]", cleaned)
    return len(parts) > 1 and bool(PRERELEASE_TAG.match(parts[1]))


def should_ignore_version(product_name: Optional[str], version: Optional[str]) -> bool:
    """
    Decide whether a detected version is dropped for this product.

    Products with "beta" in their name track prereleases only; every other
    product ignores prereleases.
    """
    if not product_name or not version:
        return False

    version_is_prerelease = is_prerelease(version)
    if "beta" in product_name.lower():
        return not version_is_prerelease
    return version_is_prerelease
