"""
SciLoop — Matching Heuristics

Pure, deterministic string functions shared by the hypothesis tester, the
fix generator and the benchmark evolver. No I/O, no state.
"""

from __future__ import annotations

import re
from collections.abc import Iterable

# Category name → synonyms that count as evidence for it.
KEYWORD_CATEGORIES: dict[str, tuple[str, ...]] = {
    "assertion": ("assertion", "assert", "expect", "expected", "should"),
    "error": ("error", "err", "exception", "throw", "thrown", "raise", "raised"),
    "timeout": ("timeout", "timed out", "etimedout", "deadline"),
    "deprecation": ("deprecated", "warn deprecated", "warning: deprecated", "deprecationwarning"),
    "breaking": ("breaking", "incompatible", "mismatch", "breaking change"),
    "stale": ("stale", "cache", "cached", "outdated", "old_value"),
    "network": ("network", "connection", "econnrefused", "fetch", "http"),
    "type": ("type", "typeerror", "type mismatch", "ts2"),
    "null": ("null", "none", "undefined", "cannot read property", "nonetype"),
}

_MIN_WORD_LENGTH = 4

_EXPECTED_RE = re.compile(r"expected[:\s]+([^\s,]+)", re.IGNORECASE)
_ACTUAL_RE = re.compile(r"(?:got|actual)[:\s]+([^\s,]+)", re.IGNORECASE)


def has_related_keywords(text: str, expected: str) -> bool:
    """
    True when ``expected`` names a keyword category and ``text`` contains
    one of its synonyms, or when any word of ``expected`` longer than three
    characters occurs in ``text``. Case-insensitive.
    """
    text_lower = text.lower()
    expected_lower = expected.lower()

    for category, keywords in KEYWORD_CATEGORIES.items():
        if category in expected_lower and any(kw in text_lower for kw in keywords):
            return True

    return any(
        word in text_lower
        for word in expected_lower.split()
        if len(word) >= _MIN_WORD_LENGTH
    )


def matches_expected(text: str, expected: str) -> bool:
    """Direct case-insensitive substring match, or a related-keyword match."""
    return expected.lower() in text.lower() or has_related_keywords(text, expected)


def count_matching(lines: Iterable[str], expected: str) -> int:
    return sum(1 for line in lines if matches_expected(line, expected))


def extract_expected_actual(evidence: Iterable[str]) -> tuple[str | None, str | None]:
    """
    Pull the first ``expected: X`` and ``got|actual: Y`` tokens out of
    evidence lines.
    """
    expected: str | None = None
    actual: str | None = None
    for line in evidence:
        if expected is None and (m := _EXPECTED_RE.search(line)):
            expected = m.group(1)
        if actual is None and (m := _ACTUAL_RE.search(line)):
            actual = m.group(1)
        if expected is not None and actual is not None:
            break
    return expected, actual


def find_path(text: str | None, pattern: re.Pattern[str]) -> str | None:
    """First capture group of ``pattern`` in ``text``, else None."""
    if not text:
        return None
    m = pattern.search(text)
    return m.group(1) if m else None


def slugify(text: str, max_length: int = 40) -> str:
    """Lowercase identifier-safe slug, usable in generated test names."""
    slug = re.sub(r"[^a-z0-9]+", "_", text.lower()).strip("_")
    return slug[:max_length].rstrip("_") or "case"


def truncate(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit]
