"""Ordered-source fallback policy.

Several values in the pipeline come from "field A, else field B, else a
literal default" chains: the effective date of a release, the old version
shown in a digest entry, the URL a product's versions are checked at. Each
chain is declared once as an ordered tuple of ``(source name, extractor)``
pairs and evaluated by :func:`first_available`.
"""

import logging
from typing import Any, Callable, Optional, Sequence, Tuple, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

Source = Tuple[str, Callable[[Any], Optional[T]]]


def first_available(
    subject: Any,
    sources: Sequence[Source],
    default: Optional[T] = None,
) -> Optional[T]:
    """
    Evaluate extractors in order and return the first non-null value.

    Empty strings count as missing.

    Args:
        subject: Object handed to every extractor
        sources: Ordered (name, extractor) pairs
        default: Returned when every source is empty

    Returns:
        First available value, or the default
    """
    for name, extractor in sources:
        value = extractor(subject)
        if value is None or value == "":
            continue
        logger.debug(f"Resolved value from source {name}")
        return value
    return default
