from __future__ import annotations

"""Output policy checks run on a generated answer before it is returned."""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Sequence

from src.rag.citations import ValidationIssue, find_section, validate_citations
from src.rag.disclaimers import build_disclaimer, latest_published, months_ago
from src.rag.injection import has_system_prompt_leakage, validate_sources_for_injection
from src.rag.numbers import validate_grounded_numbers, validate_number_magnitudes
from src.rag.types import RetrievedChunk, Source

DEFAULT_REFUSAL = "I don't know based on the provided context."

_EMAIL_RE = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")
_PHONE_RE = re.compile(r"\b\d{3}[-.]?\d{3}[-.]?\d{4}\b")
_RECENCY_RE = re.compile(r"\b(?:current|now|latest|recent|trends?)\b|202[0-9]", re.IGNORECASE)


@dataclass(frozen=True)
class GuardrailResult:
    allowed: bool
    reason: str


def require_context(chunks: Sequence[RetrievedChunk]) -> GuardrailResult:
    if not chunks:
        return GuardrailResult(allowed=False, reason="no_context")
    if all(not chunk.content.strip() for chunk in chunks):
        return GuardrailResult(allowed=False, reason="empty_context")
    return GuardrailResult(allowed=True, reason="ok")


@dataclass(frozen=True)
class OutputPolicy:
    require_sources: bool = True
    block_pii: bool = True
    require_per_section_citations: bool = False
    required_sections: tuple[str, ...] = ()
    strict_numbers: bool = True
    recent_months: int = 9


@dataclass(frozen=True)
class PolicyValidationResult:
    valid: bool
    issues: list[ValidationIssue] = field(default_factory=list)
    disclaimer: str | None = None


def validate_pii(text: str) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []
    emails = _EMAIL_RE.findall(text)
    phones = _PHONE_RE.findall(text)
    if emails:
        issues.append(
            ValidationIssue(
                code="PII_LEAKAGE",
                message=f"Found {len(emails)} email address(es) in output",
                severity="warning",
                meta={"type": "email", "count": len(emails)},
            )
        )
    if phones:
        issues.append(
            ValidationIssue(
                code="PII_LEAKAGE",
                message=f"Found {len(phones)} phone number(s) in output",
                severity="warning",
                meta={"type": "phone", "count": len(phones)},
            )
        )
    return issues


def validate_required_sections(
    sections: dict[str, str], required: Sequence[str]
) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []
    for name in required:
        content = find_section(sections, name)
        if content is None or not content.strip():
            issues.append(
                ValidationIssue(
                    code="EMPTY_REQUIRED_SECTION",
                    message=f"Required section '{name}' is missing or empty",
                    severity="warning",
                    meta={"section": name},
                )
            )
    return issues


def validate_recency(
    answer: str,
    web_sources: Sequence[Source],
    recent_months: int,
    now: datetime | None = None,
) -> list[ValidationIssue]:
    """Flag current or recent claims unless a web source is younger than ``recent_months``."""
    if not web_sources or not _RECENCY_RE.search(answer):
        return []
    latest = latest_published(web_sources)
    now = now or datetime.now(timezone.utc)
    if latest is not None and months_ago(latest, now) <= recent_months:
        return []
    detail = "source dates are unknown" if latest is None else f"latest source is {latest.date()}"
    return [
        ValidationIssue(
            code="UNSUPPORTED_RECENCY",
            message=(
                "Response contains current or recent claims but "
                f"{detail} (requires sources within {recent_months} months)"
            ),
            severity="warning",
            meta={
                "recent_months": recent_months,
                "latest_published": latest.isoformat() if latest else None,
            },
        )
    ]


def validate_output(
    answer: str,
    sections: dict[str, str],
    sources: list[Source],
    policy: OutputPolicy | None = None,
    grounding_text: str | None = None,
    now: datetime | None = None,
) -> PolicyValidationResult:
    """Run every output policy and collect the findings.

    Never raises for a policy violation; the answer is valid unless an
    ``error`` severity issue was found. Numbers are checked against
    ``grounding_text`` (the retrieved context) only in strict mode and only
    when grounding text is given.
    """
    policy = policy or OutputPolicy()
    web_sources = [source for source in sources if source.type == "web"]
    issues: list[ValidationIssue] = []
    issues.extend(
        validate_citations(
            answer,
            sections,
            sources,
            require_sources_section=policy.require_sources,
            require_per_section_citations=policy.require_per_section_citations,
        )
    )
    if policy.strict_numbers and grounding_text:
        issues.extend(validate_grounded_numbers(answer, grounding_text))
    issues.extend(validate_number_magnitudes(answer))
    issues.extend(validate_sources_for_injection(sources))
    issues.extend(validate_recency(answer, web_sources, policy.recent_months, now))
    if has_system_prompt_leakage(answer):
        issues.append(
            ValidationIssue(
                code="SYSTEM_PROMPT_LEAKAGE",
                message="Output appears to contain system prompt instructions",
                severity="error",
            )
        )
    if policy.block_pii:
        issues.extend(validate_pii(answer))
    if policy.required_sections:
        issues.extend(validate_required_sections(sections, policy.required_sections))
    valid = not any(issue.severity == "error" for issue in issues)
    disclaimer = build_disclaimer(issues, web_sources, policy.recent_months, now)
    return PolicyValidationResult(valid=valid, issues=issues, disclaimer=disclaimer or None)
