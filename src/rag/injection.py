from __future__ import annotations

"""Prompt-injection detection and sanitization for retrieved and external text."""

import re
from typing import Iterable

from src.rag.citations import ValidationIssue
from src.rag.types import Source

SNIPPET_MAX_LENGTH = 500
ISSUE_SNIPPET_LENGTH = 100

INJECTION_PATTERNS: list[re.Pattern[str]] = [
    # instruction override
    re.compile(r"ignore\s+(all\s+)?(prior|previous|earlier)\s+(instructions?|prompts?|commands?)", re.I),
    re.compile(r"disregard\s+(all\s+)?(prior|previous|earlier)", re.I),
    re.compile(r"forget\s+(all\s+)?(prior|previous|earlier)", re.I),
    # role manipulation
    re.compile(r"act\s+as\s+(system|admin|root|assistant)", re.I),
    re.compile(r"you\s+are\s+(now\s+)?(a\s+)?(system|admin|root)", re.I),
    re.compile(r"switch\s+to\s+(system|admin)\s+mode", re.I),
    # structural role markers
    re.compile(r"<\s*(system|assistant|user)\s*>", re.I),
    re.compile(r"\[?\s*(system|assistant|user)\s*\]?:", re.I),
    # prompt exfiltration
    re.compile(r"repeat\s+(your|the)\s+(instructions?|prompt|system\s+message)", re.I),
    re.compile(r"show\s+me\s+(your|the)\s+(instructions?|prompt)", re.I),
    re.compile(r"what\s+(are|is)\s+your\s+(instructions?|prompt)", re.I),
    re.compile(r"override\s+(all\s+)?(instructions?|settings?|rules?)", re.I),
    re.compile(r"bypass\s+(all\s+)?(security|safety|checks?)", re.I),
    # conversation reset
    re.compile(r"/assistant\s*$", re.I | re.M),
    re.compile(r"/system\s*$", re.I | re.M),
    re.compile(r"new\s+conversation", re.I),
]

LEAKAGE_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"you are the (stage-a|stage-b|business track)", re.I),
    re.compile(r"your role is to (analyze|generate|produce)", re.I),
    re.compile(r"critical rules?:", re.I),
    re.compile(r"never fabricate", re.I),
    re.compile(r"always cite sources", re.I),
]

_ROLE_TAG_RE = re.compile(r"<\s*(system|assistant|user)\s*>", re.I)
_ROLE_BRACKET_RE = re.compile(r"\[\s*(system|assistant|user)\s*\]", re.I)
_ROLE_PREFIX_RE = re.compile(r"^\s*(system|assistant|user)\s*:", re.I | re.M)
_ROLE_COMMAND_RE = re.compile(r"/\s*(system|assistant|user)\s*$", re.I | re.M)
_ROLE_MARKER_COUNT_RE = re.compile(r"<(system|assistant|user)>", re.I)
_DANGEROUS_PHRASES = [
    re.compile(r"ignore\s+(all\s+)?(prior|previous|earlier)\s+instructions?", re.I),
    re.compile(r"disregard\s+(all\s+)?(prior|previous|earlier)", re.I),
    re.compile(r"forget\s+(all\s+)?(prior|previous|earlier)", re.I),
]
_WHITESPACE_RE = re.compile(r"\s+")


def detect_injection(text: str) -> list[str]:
    """Return the source of every injection pattern that matches ``text``."""
    if not text:
        return []
    return [pattern.pattern for pattern in INJECTION_PATTERNS if pattern.search(text)]


def validate_sources_for_injection(sources: Iterable[Source]) -> list[ValidationIssue]:
    """Flag every source whose snippet matches an injection pattern."""
    issues: list[ValidationIssue] = []
    for index, source in enumerate(sources):
        patterns = detect_injection(source.snippet)
        if not patterns:
            continue
        label = source.title or source.doc_id or source.url or f"source {index + 1}"
        issues.append(
            ValidationIssue(
                code="PROMPT_INJECTION_DETECTED",
                message=f"Potential prompt injection detected in {source.type} source '{label}'",
                severity="warning",
                meta={
                    "source_index": index,
                    "source_type": source.type,
                    "patterns": patterns,
                    "snippet": source.snippet[:ISSUE_SNIPPET_LENGTH],
                },
            )
        )
    return issues


def strip_injection(text: str) -> str:
    """Remove role markers and neutralize instruction-override phrases."""
    cleaned = _ROLE_TAG_RE.sub("", text)
    cleaned = _ROLE_BRACKET_RE.sub("", cleaned)
    cleaned = _ROLE_PREFIX_RE.sub("", cleaned)
    cleaned = _ROLE_COMMAND_RE.sub("", cleaned)
    for pattern in _DANGEROUS_PHRASES:
        cleaned = pattern.sub("[removed]", cleaned)
    return cleaned


def has_system_prompt_leakage(text: str) -> bool:
    return any(pattern.search(text) for pattern in LEAKAGE_PATTERNS)


def sanitize_snippet(text: str, max_length: int = SNIPPET_MAX_LENGTH) -> str:
    """Truncate, strip injection markers and collapse whitespace.

    Must run on any externally sourced text before it reaches a prompt.
    """
    sanitized = text
    if len(sanitized) > max_length:
        sanitized = sanitized[:max_length] + "..."
    sanitized = strip_injection(sanitized)
    return _WHITESPACE_RE.sub(" ", sanitized).strip()


def score_injection_risk(text: str) -> float:
    """Bounded 0-1 risk from pattern hits, prompt leakage and role-marker density."""
    score = 0.2 * len(detect_injection(text))
    if has_system_prompt_leakage(text):
        score += 0.3
    role_markers = len(_ROLE_MARKER_COUNT_RE.findall(text))
    score += min(role_markers * 0.1, 0.3)
    return min(score, 1.0)
