"""Deterministic selection of a product's current version.

Every caller (API, digest, history store) resolves through these functions so
the same snapshot of history always yields the same answer.
"""

from datetime import datetime
from typing import Any, Iterable, List, Optional, Union

from releasewatch.versions.parser import compare, version_sort_key

# Missing dates sort below any real date
EPOCH = datetime.min


def _ordering_key(record: Any) -> tuple:
    """Version first, then release date, then detection time; id keeps it total."""
    return (
        version_sort_key(record.version),
        record.release_date or EPOCH,
        record.detected_at or EPOCH,
        record.version or "",
        record.id or 0,
    )


def _verified(records: Iterable[Any]) -> List[Any]:
    return [r for r in records if r.verified]


def resolve_current_version(records: Iterable[Any]) -> Optional[Any]:
    """
    Pick the canonical current record of one product.

    An operator override wins unconditionally; otherwise the highest version
    under the comparator wins, ties broken by latest release date and then
    latest detection time. Unverified records are ignored.

    Args:
        records: Version records of a single product (any order)

    Returns:
        The current record, or None if nothing is verified
    """
    verified = _verified(records)
    if not verified:
        return None

    overrides = [r for r in verified if r.is_current_override]
    if overrides:
        return max(overrides, key=_ordering_key)

    return max(verified, key=_ordering_key)


def order_history(records: Iterable[Any]) -> List[Any]:
    """Verified records newest version first."""
    return sorted(_verified(records), key=_ordering_key, reverse=True)


def previous_version(
    records: Iterable[Any], current: Union[str, Any, None]
) -> Optional[Any]:
    """
    Find the verified record immediately below ``current``.

    Args:
        records: Version records of a single product
        current: Current record or version string

    Returns:
        Highest verified record strictly older than current, or None
    """
    if current is None:
        return None
    current_version = current if isinstance(current, str) else current.version

    older = [r for r in _verified(records) if compare(r.version, current_version) < 0]
    if not older:
        return None
    return max(older, key=_ordering_key)
