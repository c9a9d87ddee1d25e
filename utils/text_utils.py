"""
Text utilities for comparing label text across photos.

Used by the feature normalizer and the candidate scorer.
"""

import re
import unicodedata
from typing import Optional

_TOKEN_SPLIT = re.compile(r"[^a-z0-9+.\-]+")


def strip_accents(text: Optional[str]) -> str:
    """
    Remove accent marks, keeping base characters.

    - "Crème Brûlée" → "Creme Brulee"
    - None → ""
    """
    if not text:
        return ""

    # NFD decomposition separates base chars from accents
    normalized = unicodedata.normalize('NFD', text)

    # Remove combining marks (Unicode category 'Mn')
    return ''.join(
        c for c in normalized
        if unicodedata.category(c) != 'Mn'
    )


def tokenize(text: Optional[str]) -> list[str]:
    """
    Split text into lowercase comparison tokens.

    Keeps '+', '.', '-' inside tokens so "vitamin-c" and "b12+" survive.

    Args:
        text: Product or variant name

    Returns:
        List of non-empty tokens (order preserved, duplicates kept)
    """
    if not text:
        return []
    lower = strip_accents(text).lower()
    return [t for t in _TOKEN_SPLIT.split(lower) if t]


def jaccard(a: list[str], b: list[str]) -> float:
    """Jaccard similarity of two token lists (0 when both are empty)."""
    set_a, set_b = set(a), set(b)
    union = set_a | set_b
    if not union:
        return 0.0
    return len(set_a & set_b) / len(union)


def levenshtein(a: str, b: str) -> int:
    """Edit distance between two strings."""
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)

    previous = list(range(len(b) + 1))
    for i, char_a in enumerate(a, start=1):
        current = [i]
        for j, char_b in enumerate(b, start=1):
            cost = 0 if char_a == char_b else 1
            current.append(min(
                previous[j] + 1,         # deletion
                current[j - 1] + 1,      # insertion
                previous[j - 1] + cost,  # substitution
            ))
        previous = current
    return previous[-1]


def truncate(text: Optional[str], max_chars: int) -> str:
    """Collapse whitespace and cut to max_chars (adds '…' when cut)."""
    if not text:
        return ""
    collapsed = re.sub(r"\s+", " ", text).strip()
    if len(collapsed) <= max_chars:
        return collapsed
    return collapsed[: max(0, max_chars - 1)] + "…"
