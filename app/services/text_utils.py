"""Text normalization shared by every keyword classifier."""

import re
import unicodedata

_NON_ALNUM_RE = re.compile(r"[^a-z0-9\s]")
_WHITESPACE_RE = re.compile(r"\s+")


def normalize(text: str | None) -> str:
    """Lowercase, strip diacritics, turn punctuation into spaces and collapse whitespace.

    >>> normalize("¡Quiero ver CHOMPAS, por favor!")
    'quiero ver chompas por favor'
    """
    if not text:
        return ""
    decomposed = unicodedata.normalize("NFD", str(text))
    without_marks = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    cleaned = _NON_ALNUM_RE.sub(" ", without_marks.lower())
    return _WHITESPACE_RE.sub(" ", cleaned).strip()


def matches_all_words(haystack: str | None, needle: str | None) -> bool:
    """True when every word of ``needle`` appears in ``haystack``.

    Each needle word is a substring test against the normalized haystack, so
    word order does not matter and ``"chompa premium"`` matches
    ``"Quiero ver chompas PREMIUM"``. An empty needle never matches.
    """
    words = normalize(needle).split()
    if not words:
        return False
    normalized_haystack = normalize(haystack)
    return all(word in normalized_haystack for word in words)


def contains_any(text: str | None, phrases) -> bool:
    """True when any phrase appears in the normalized text."""
    normalized = normalize(text)
    if not normalized:
        return False
    return any(normalize(phrase) in normalized for phrase in phrases if phrase)
