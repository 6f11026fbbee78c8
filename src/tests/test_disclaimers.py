from __future__ import annotations

from datetime import datetime, timezone

from src.rag.citations import ValidationIssue
from src.rag.disclaimers import (
    build_disclaimer,
    build_freshness_note,
    build_issue_warning,
    months_ago,
    summarize_issue,
)
from src.rag.types import Source

NOW = datetime(2025, 6, 30, tzinfo=timezone.utc)


def issue(code: str, severity: str = "warning") -> ValidationIssue:
    return ValidationIssue(code=code, message=code.lower(), severity=severity)


def web(published_at: datetime | None) -> Source:
    return Source(type="web", snippet="page", url="https://example.com", published_at=published_at)


def test_issue_summaries_pluralize() -> None:
    assert summarize_issue("UNGROUNDED_NUMBER", 1) == "1 number not found in the retrieved sources"
    assert summarize_issue("UNGROUNDED_NUMBER", 3) == "3 numbers not found in the retrieved sources"
    assert summarize_issue("CUSTOM_CHECK", 2) == "2 CUSTOM_CHECK issues"


def test_issue_warning_groups_by_code() -> None:
    warning = build_issue_warning(
        [
            issue("MISSING_CITATION_TARGET", "error"),
            issue("UNGROUNDED_NUMBER"),
            issue("UNGROUNDED_NUMBER"),
        ]
    )

    assert warning.splitlines() == [
        "**Quality Notice**",
        "This response has 1 error that should be addressed:",
        "Additionally, there are 2 warnings:",
        "- 1 citation reference non-existent sources",
        "- 2 numbers not found in the retrieved sources",
        "",
        "Please review and verify information before use.",
    ]
    assert build_issue_warning([]) == ""


def test_months_ago_treats_naive_dates_as_utc() -> None:
    assert months_ago(datetime(2025, 1, 1), NOW) == 6
    assert months_ago(datetime(2025, 6, 1, tzinfo=timezone.utc), NOW) == 0


def test_freshness_note_variants() -> None:
    assert build_freshness_note([], 9, NOW) == ""
    assert "Source dates vary" in build_freshness_note([web(None)], 9, NOW)
    assert build_freshness_note([web(datetime(2025, 5, 2, tzinfo=timezone.utc))], 9, NOW) == (
        "**Data Freshness**: Web data current as of 2025-05-02."
    )
    stale = build_freshness_note([web(datetime(2023, 6, 30, tzinfo=timezone.utc))], 9, NOW)
    assert stale.startswith("**Data Freshness**: Latest source is 24 months old.")


def test_disclaimer_is_empty_without_issues_or_web_sources() -> None:
    assert build_disclaimer([], [], 9, NOW) == ""
    combined = build_disclaimer([issue("PII_LEAKAGE")], [web(None)], 9, NOW)
    assert combined.startswith("**Data Freshness**")
    assert "**Quality Notice**" in combined
