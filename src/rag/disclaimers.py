from __future__ import annotations

"""Reader-facing notes appended to an answer: quality notice and web data freshness."""

from collections import Counter
from datetime import datetime, timezone
from typing import Sequence

from src.rag.citations import ValidationIssue
from src.rag.types import Source

_ISSUE_SUMMARIES = {
    "NO_SOURCES_SECTION": "Missing Sources section",
    "MISSING_CITATION_TARGET": "{count} citation{s} reference non-existent sources",
    "UNGROUNDED_NUMBER": "{count} number{s} not found in the retrieved sources",
    "SUSPICIOUS_MAGNITUDE": "{count} number{s} with unusual magnitudes",
    "PROMPT_INJECTION_DETECTED": "{count} source{s} contain potential prompt injection",
    "UNSUPPORTED_RECENCY": "Current claims without recent sources",
    "PII_LEAKAGE": "Potential PII detected in {count} location{s}",
    "EMPTY_REQUIRED_SECTION": "{count} required section{s} missing or empty",
    "SYSTEM_PROMPT_LEAKAGE": "Output may expose system instructions",
}


def _plural(count: int) -> str:
    return "s" if count > 1 else ""


def summarize_issue(code: str, count: int) -> str:
    template = _ISSUE_SUMMARIES.get(code, "{count} " + code + " issue{s}")
    return template.format(count=count, s=_plural(count))


def build_issue_warning(issues: Sequence[ValidationIssue]) -> str:
    errors = sum(1 for issue in issues if issue.severity == "error")
    warnings = sum(1 for issue in issues if issue.severity == "warning")
    if not errors and not warnings:
        return ""
    lines = ["**Quality Notice**"]
    if errors:
        lines.append(f"This response has {errors} error{_plural(errors)} that should be addressed:")
    if warnings:
        lead = "Additionally, there are" if errors else "There are"
        lines.append(f"{lead} {warnings} warning{_plural(warnings)}:")
    for code, count in Counter(issue.code for issue in issues).items():
        lines.append(f"- {summarize_issue(code, count)}")
    lines.append("\nPlease review and verify information before use.")
    return "\n".join(lines)


def months_ago(moment: datetime, now: datetime) -> int:
    """Whole 30-day months between ``moment`` and ``now``; naive datetimes are UTC."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return int((now - moment).days // 30)


def latest_published(sources: Sequence[Source]) -> datetime | None:
    dates = [
        source.published_at
        if source.published_at.tzinfo is not None
        else source.published_at.replace(tzinfo=timezone.utc)
        for source in sources
        if source.published_at is not None
    ]
    return max(dates) if dates else None


def build_freshness_note(
    web_sources: Sequence[Source], recent_months: int, now: datetime | None = None
) -> str:
    if not web_sources:
        return ""
    latest = latest_published(web_sources)
    if latest is None:
        return "**Data Freshness**: Source dates vary; verify currency of web data."
    age = months_ago(latest, now or datetime.now(timezone.utc))
    if age > recent_months:
        return (
            f"**Data Freshness**: Latest source is {age} months old. "
            "Conditions may have changed."
        )
    return f"**Data Freshness**: Web data current as of {latest.date().isoformat()}."


def build_disclaimer(
    issues: Sequence[ValidationIssue],
    web_sources: Sequence[Source] = (),
    recent_months: int = 9,
    now: datetime | None = None,
) -> str:
    """Join the freshness note and the quality notice; empty when neither applies."""
    parts = [
        build_freshness_note(web_sources, recent_months, now),
        build_issue_warning(issues),
    ]
    return "\n\n".join(part for part in parts if part)
