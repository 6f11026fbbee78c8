from __future__ import annotations

"""Numeric checks on generated answers: grounding in the sources and magnitude sanity."""

import re
from dataclasses import dataclass
from typing import Iterable

from src.rag.citations import ValidationIssue

_CURRENCY_RE = re.compile(r"\$([0-9][0-9,]*(?:\.[0-9]+)?)([KMB])?", re.IGNORECASE)
_PERCENT_RE = re.compile(r"([0-9]+(?:\.[0-9]+)?)\s*%")
_PLAIN_RE = re.compile(r"\b([0-9]{2,}(?:,[0-9]{3})*(?:\.[0-9]+)?)\b")

_MULTIPLIERS = {"K": 1_000.0, "M": 1_000_000.0, "B": 1_000_000_000.0}
CONTEXT_CHARS = 30
MIN_PLAIN_VALUE = 100.0


@dataclass(frozen=True)
class ExtractedNumber:
    value: float
    text: str
    context: str
    start: int
    section: str | None = None


def _window(text: str, start: int, end: int) -> str:
    return text[max(0, start - CONTEXT_CHARS) : min(len(text), end + CONTEXT_CHARS)]


def extract_numbers(text: str, section: str | None = None) -> list[ExtractedNumber]:
    """Currency (``$1.2M``), percentages (``25%``) and plain numbers >= 100, in text order.

    A plain number inside a currency or percentage match is not reported twice.
    """
    found: list[ExtractedNumber] = []
    taken: list[tuple[int, int]] = []
    for match in _CURRENCY_RE.finditer(text):
        value = float(match.group(1).replace(",", ""))
        value *= _MULTIPLIERS.get((match.group(2) or "").upper(), 1.0)
        found.append(
            ExtractedNumber(
                value, match.group(0), _window(text, *match.span()), match.start(), section
            )
        )
        taken.append(match.span())
    for match in _PERCENT_RE.finditer(text):
        found.append(
            ExtractedNumber(
                float(match.group(1)),
                match.group(0),
                _window(text, *match.span()),
                match.start(),
                section,
            )
        )
        taken.append(match.span())
    for match in _PLAIN_RE.finditer(text):
        start, end = match.span()
        if any(start < stop and end > begin for begin, stop in taken):
            continue
        value = float(match.group(1).replace(",", ""))
        if value < MIN_PLAIN_VALUE:
            continue
        found.append(
            ExtractedNumber(value, match.group(0), _window(text, start, end), start, section)
        )
    return sorted(found, key=lambda number: number.start)


@dataclass(frozen=True)
class GroundingTolerance:
    percentage_points: float = 0.5
    count_pct: float = 0.01
    currency_pct: float = 0.02


def is_number_grounded(
    value: float,
    candidates: Iterable[float],
    tolerance: GroundingTolerance | None = None,
) -> bool:
    """True when ``value`` matches a candidate within a magnitude-dependent tolerance.

    Fractions (< 1) allow ``percentage_points / 100``, small counts (< 100)
    allow 1, counts below 1000 allow ``count_pct`` and larger amounts
    ``currency_pct`` of the candidate.
    """
    tolerance = tolerance or GroundingTolerance()
    for candidate in candidates:
        if candidate < 1:
            allowed = tolerance.percentage_points / 100
        elif candidate < 100:
            allowed = 1.0
        elif candidate < 1000:
            allowed = candidate * tolerance.count_pct
        else:
            allowed = candidate * tolerance.currency_pct
        if abs(value - candidate) <= allowed:
            return True
    return False


_PRICE_RE = re.compile(r"\b(?:price|cost|arpu)", re.IGNORECASE)
_MARKET_RE = re.compile(r"\bmarket|\b(?:tam|sam|som)\b", re.IGNORECASE)
_GROWTH_RE = re.compile(r"\b(?:growth|rate|change)", re.IGNORECASE)
_MARGIN_RE = re.compile(r"\b(?:margin|profit)", re.IGNORECASE)


def is_suspicious_magnitude(value: float, context: str) -> bool:
    """Range checks keyed on words near the number (prices, market sizes, growth, margins)."""
    if _PRICE_RE.search(context) and not 0 < value < 1_000_000:
        return True
    if _MARKET_RE.search(context) and not 1_000 <= value <= 100_000_000_000_000:
        return True
    if _GROWTH_RE.search(context) and not -100 <= value <= 1_000:
        return True
    if _MARGIN_RE.search(context) and not -50 <= value <= 100:
        return True
    return False


def validate_grounded_numbers(answer: str, grounding_text: str) -> list[ValidationIssue]:
    """Warn for every significant answer number absent from the grounding text."""
    candidates = [number.value for number in extract_numbers(grounding_text)]
    issues: list[ValidationIssue] = []
    for number in extract_numbers(answer):
        if number.value < 0.01 or is_number_grounded(number.value, candidates):
            continue
        issues.append(
            ValidationIssue(
                code="UNGROUNDED_NUMBER",
                message=f"Number {number.text} does not appear in the retrieved sources",
                severity="warning",
                meta={"value": number.value, "text": number.text, "context": number.context},
            )
        )
    return issues


def validate_number_magnitudes(answer: str) -> list[ValidationIssue]:
    return [
        ValidationIssue(
            code="SUSPICIOUS_MAGNITUDE",
            message=f"Number {number.text} has suspicious magnitude given context",
            severity="warning",
            meta={"value": number.value, "text": number.text, "context": number.context},
        )
        for number in extract_numbers(answer)
        if is_suspicious_magnitude(number.value, number.context)
    ]
