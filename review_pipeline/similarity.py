"""
String normalization and edit-distance similarity.

Pure functions, no state. Shared by the deduplicator (review text and
author names) and the business matcher (business names).
"""

import re

from rapidfuzz.distance import Levenshtein

_PUNCTUATION_RE = re.compile(r"[^\w\s]", re.UNICODE)
_WHITESPACE_RE = re.compile(r"\s+")


def normalize_text(value) -> str:
    """Lowercase, strip punctuation, collapse whitespace."""
    if not value:
        return ""
    text = _PUNCTUATION_RE.sub("", str(value).lower())
    return _WHITESPACE_RE.sub(" ", text).strip()


def normalize_name(value) -> str:
    """Lowercase and drop every non-alphanumeric character (spaces included)."""
    if not value:
        return ""
    return "".join(ch for ch in str(value).lower() if ch.isalnum())


def edit_distance(a: str, b: str) -> int:
    """Levenshtein distance (insert, delete, substitute all cost 1)."""
    return Levenshtein.distance(a or "", b or "")


def similarity(a: str, b: str) -> float:
    """
    Edit-distance similarity in [0, 1]: (maxLen - distance) / maxLen.

    Two empty strings are identical (1.0); exactly one empty string is 0.0.
    Callers normalize first; this compares the strings as given.
    """
    a = a or ""
    b = b or ""
    if not a and not b:
        return 1.0
    if not a or not b:
        return 0.0
    max_len = max(len(a), len(b))
    return (max_len - edit_distance(a, b)) / max_len


def text_similarity(a: str, b: str) -> float:
    """similarity() over normalize_text() of both sides."""
    return similarity(normalize_text(a), normalize_text(b))


def name_similarity(a: str, b: str) -> float:
    """similarity() over normalize_name() of both sides."""
    return similarity(normalize_name(a), normalize_name(b))
