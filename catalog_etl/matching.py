"""Version-aware, brand-gated fuzzy matching of scraped titles to the catalog.

Matching order for each catalog entry:

1. Version gate - two titles carrying different version tokens never match.
2. Exact match of the cleaned titles - returns immediately.
3. Brand-gated fuzzy score - only when either brand is unknown or both agree.

The best fuzzy score wins if it exceeds :data:`FUZZY_THRESHOLD`; otherwise the
candidate is a new product.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional

from rapidfuzz.distance import Levenshtein

from .models import UNKNOWN_BRAND, CatalogEntry

LOGGER = logging.getLogger(__name__)

FUZZY_THRESHOLD = 0.85
CONTAINMENT_SCORE = 0.95
CONTAINMENT_MIN_LENGTH = 4
FILLER_WORDS = ("vst", "plugin", "software", "download", "edition", "bundle")

_WHITESPACE = re.compile(r"\s+")
_DISALLOWED = re.compile(r"[^a-z0-9 ]")
_FILLER = re.compile(r"\b(?:%s)\b" % "|".join(FILLER_WORDS))
_VERSION = re.compile(r"\bv?(\d+(\.\d+)?)\b")


class MatchMethod(str, Enum):
    EXACT = "Exact"
    FUZZY = "Fuzzy"


@dataclass(frozen=True)
class MatchResult:
    product: CatalogEntry
    score: float
    method: MatchMethod


def normalize(text: str) -> str:
    """Lowercase, keep ``[a-z0-9 ]``, drop filler words, collapse spaces.

    Idempotent: ``normalize(normalize(x)) == normalize(x)``.
    """
    value = _WHITESPACE.sub(" ", (text or "").lower())
    value = _DISALLOWED.sub("", value)
    value = _FILLER.sub("", value)
    return _WHITESPACE.sub(" ", value).strip()


def is_known_brand(brand: Optional[str]) -> bool:
    return bool(brand) and brand.strip() != "" and brand != UNKNOWN_BRAND


def clean_title_string(title: str, brand: Optional[str]) -> str:
    """Normalize ``title`` after removing the first occurrence of a known brand."""
    value = (title or "").lower()
    if is_known_brand(brand):
        value = value.replace(brand.lower(), "", 1)
    return normalize(value)


def extract_version(text: str) -> Optional[str]:
    """First standalone version-looking token, e.g. ``"5"`` or ``"3.5"``."""
    match = _VERSION.search(text or "")
    return match.group(1) if match else None


def version_mismatch(title_a: str, title_b: str) -> bool:
    """True when both titles carry a version token and the tokens differ.

    Tokens are compared as strings, so ``"5"`` and ``"5.0"`` differ.
    """
    version_a = extract_version(title_a)
    version_b = extract_version(title_b)
    return version_a is not None and version_b is not None and version_a != version_b


def similarity(text_a: str, text_b: str) -> float:
    """Normalized Levenshtein similarity in ``[0, 1]``.

    When the shorter normalized string has at least four characters and is
    contained in the other, the score is pinned at 0.95.
    """
    a = normalize(text_a)
    b = normalize(text_b)

    if min(len(a), len(b)) >= CONTAINMENT_MIN_LENGTH and (a in b or b in a):
        return CONTAINMENT_SCORE

    longest = max(len(a), len(b))
    if longest == 0:
        return 1.0
    return 1.0 - Levenshtein.distance(a, b) / longest


def brands_compatible(candidate_brand: Optional[str], catalog_brand: Optional[str]) -> bool:
    """Brand-safety gate for fuzzy comparison."""
    if not is_known_brand(candidate_brand) or not is_known_brand(catalog_brand):
        return True
    return candidate_brand.lower() == catalog_brand.lower()


def find_best_match(
    title: str,
    brand: Optional[str],
    catalog: Iterable[CatalogEntry],
) -> Optional[MatchResult]:
    """Find the catalog entry that ``title``/``brand`` most likely refers to."""
    clean_candidate = clean_title_string(title, brand)
    best: Optional[CatalogEntry] = None
    best_score = 0.0

    for entry in catalog:
        if version_mismatch(title, entry.title):
            continue

        clean_entry = clean_title_string(entry.title, entry.brand)
        if clean_candidate == clean_entry:
            return MatchResult(entry, 1.0, MatchMethod.EXACT)

        if not brands_compatible(brand, entry.brand):
            continue

        score = similarity(clean_candidate, clean_entry)
        if score > best_score:
            best_score = score
            best = entry

    if best is not None and best_score > FUZZY_THRESHOLD:
        return MatchResult(best, best_score, MatchMethod.FUZZY)

    LOGGER.debug("No match for %r (best score %.2f)", title, best_score)
    return None
