from __future__ import annotations

import re
import unicodedata
from collections.abc import Iterable

_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def slugify(value: str) -> str:
    """Return a URL-friendly slug for a display name.

    Strategy: strip accents, casefold, collapse any run of non-alphanumerics
    into a single hyphen. Deterministic and side-effect free.
    """
    normalized = unicodedata.normalize("NFKD", value).encode("ascii", "ignore").decode("ascii")
    slug = _NON_ALNUM.sub("-", normalized.lower()).strip("-")
    return slug or "item"


def unique_slug(value: str, taken: Iterable[str | None]) -> str:
    """Slugify ``value`` and suffix ``-2``, ``-3``... until it is not in ``taken``."""
    base = slugify(value)
    existing = {s for s in taken if s}
    if base not in existing:
        return base
    n = 2
    while f"{base}-{n}" in existing:
        n += 1
    return f"{base}-{n}"
