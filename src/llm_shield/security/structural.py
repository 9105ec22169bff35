"""Structural heuristics over raw prompt text.

Each check is independent and additive. No cap is applied here; the
risk analyzer clamps the combined score.
"""

from __future__ import annotations

import re
from collections import Counter

from llm_shield.security.models import StructuralReport

_SPECIAL_CHARS = re.compile(r"[<>{}\[\]()`;|&$]")
_FULL_WIDTH = re.compile(r"[\uFF01-\uFF5E]")
_COMBINING_MARKS = re.compile(r"[\u0300-\u036F\u1AB0-\u1AFF\u1DC0-\u1DFF\u20D0-\u20FF]")
_UPPERCASE = re.compile(r"[A-Z]")
_WORD = re.compile(r"\b\w+\b")
_URL = re.compile(r"https?://\S+", re.IGNORECASE)
_ENCODED = re.compile(r"%[0-9A-F]{2}|\\x[0-9A-F]{2}|\\u[0-9A-F]{4}", re.IGNORECASE)
_SQL_KEYWORDS = re.compile(
    r"\b(?:SELECT|INSERT|UPDATE|DELETE|DROP|UNION|WHERE|FROM|TABLE)\b", re.IGNORECASE
)

# (threshold, points)
_LONG_PROMPT = (2000, 10)
_SPECIAL_CHAR_DENSITY = (10, 15)
_FULL_WIDTH_DENSITY = (5, 80)  # Deliberate character-substitution obfuscation
_COMBINING_DENSITY = (10, 60)
_UPPERCASE_RATIO = (0.5, 10)
_UPPERCASE_MIN_LENGTH = 50
_REPEATED_TOKENS = (20, 10)
_URL_COUNT = (3, 15)
_ENCODED_COUNT = (5, 20)
_SQL_COUNT = (2, 25)


def count_repeated_tokens(prompt: str) -> int:
    """Count word occurrences that repeat an earlier word (case-insensitive)."""
    counts = Counter(word.lower() for word in _WORD.findall(prompt))
    return sum(n - 1 for n in counts.values())


def analyze_structure(prompt: str) -> StructuralReport:
    """Score structural attack markers in *prompt*.

    Args:
        prompt: Raw prompt text.

    Returns:
        A :class:`StructuralReport` with the point subtotal and one
        human-readable finding per triggered check.
    """
    report = StructuralReport()
    length = len(prompt)
    if length == 0:
        return report

    def add(points: float, finding: str) -> None:
        report.score += points
        report.findings.append(finding)

    if length > _LONG_PROMPT[0]:
        add(_LONG_PROMPT[1], "Unusually long prompt (potential obfuscation)")

    special = len(_SPECIAL_CHARS.findall(prompt))
    if special > _SPECIAL_CHAR_DENSITY[0]:
        add(_SPECIAL_CHAR_DENSITY[1], f"High special character count: {special}")

    full_width = len(_FULL_WIDTH.findall(prompt))
    if full_width > _FULL_WIDTH_DENSITY[0]:
        add(
            _FULL_WIDTH_DENSITY[1],
            f"Full-width character obfuscation detected: {full_width} chars",
        )

    marks = len(_COMBINING_MARKS.findall(prompt))
    if marks > _COMBINING_DENSITY[0]:
        add(_COMBINING_DENSITY[1], f"Unicode diacritics obfuscation detected: {marks} marks")

    upper_ratio = len(_UPPERCASE.findall(prompt)) / length
    if upper_ratio > _UPPERCASE_RATIO[0] and length > _UPPERCASE_MIN_LENGTH:
        add(_UPPERCASE_RATIO[1], "Excessive uppercase (possible shouting/emphasis attack)")

    repeated = count_repeated_tokens(prompt)
    if repeated > _REPEATED_TOKENS[0]:
        add(_REPEATED_TOKENS[1], f"Excessive word repetition detected: {repeated} repeats")

    urls = len(_URL.findall(prompt))
    if urls > _URL_COUNT[0]:
        add(_URL_COUNT[1], f"Multiple URLs detected: {urls}")

    encoded = len(_ENCODED.findall(prompt))
    if encoded > _ENCODED_COUNT[0]:
        add(_ENCODED_COUNT[1], f"Encoded characters detected (possible obfuscation): {encoded}")

    sql = len(_SQL_KEYWORDS.findall(prompt))
    if sql > _SQL_COUNT[0]:
        add(_SQL_COUNT[1], f"SQL injection patterns detected: {sql} keywords")

    return report
