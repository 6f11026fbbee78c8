from __future__ import annotations

"""Citation integrity checks between generated text and its source list."""

import re
from dataclasses import dataclass, field
from typing import Any

from src.rag.types import Source

_MARKER_RE = re.compile(r"\[([A-Za-z]\d+)\]")
_CITATION_RE = re.compile(r"\[[A-Za-z]\d+\]")
_HEADING_RE = re.compile(r"^\s{0,3}#{1,6}\s+(.+?)\s*#*\s*$", re.M)

SECTION_NAME_VARIATIONS: dict[str, list[str]] = {
    "ideal customer profile": ["icp", "customer profile", "target customer", "customer persona"],
    "go-to-market strategy": ["gtm strategy", "gtm", "market strategy", "go to market"],
    "key performance indicators": ["kpis", "performance indicators", "metrics"],
    "executive summary": ["summary", "overview", "executive overview"],
    "competitive analysis": ["competition", "competitive landscape", "market competition"],
    "financial projections": ["financials", "financial forecast", "projections"],
    "market analysis": ["market research", "market overview", "industry analysis"],
    "value proposition": ["value prop", "unique value proposition", "uvp"],
    "business model": ["revenue model", "business model canvas"],
}


@dataclass(frozen=True)
class ValidationIssue:
    """Structured policy finding; ``severity`` is ``error`` or ``warning``."""
    code: str
    message: str
    severity: str
    meta: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "severity": self.severity,
            "meta": self.meta,
        }


def extract_citation_markers(text: str) -> list[str]:
    """Return markers like ``R1`` or ``W2`` in order of first appearance."""
    seen: dict[str, None] = {}
    for marker in _MARKER_RE.findall(text or ""):
        seen.setdefault(marker.upper(), None)
    return list(seen)


def split_sections(text: str) -> dict[str, str]:
    """Split markdown into ``{heading: body}`` in document order.

    Text before the first heading is not part of any section.
    """
    sections: dict[str, str] = {}
    matches = list(_HEADING_RE.finditer(text or ""))
    for position, match in enumerate(matches):
        start = match.end()
        end = matches[position + 1].start() if position + 1 < len(matches) else len(text)
        name = match.group(1).strip()
        body = text[start:end].strip()
        if name in sections:
            sections[name] = f"{sections[name]}\n\n{body}".strip()
        else:
            sections[name] = body
    return sections


def has_sources_section(sections: dict[str, str]) -> bool:
    return any(key.strip().lower() == "sources" for key in sections)


def validate_citation_mapping(
    text: str,
    rag_sources: list[Source],
    web_sources: list[Source],
) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []
    markers = extract_citation_markers(text)
    cited: dict[str, set[int]] = {"R": set(), "W": set()}

    for marker in markers:
        kind = marker[0]
        index = int(marker[1:]) - 1
        if kind not in cited:
            issues.append(
                ValidationIssue(
                    code="UNSUPPORTED_SOURCE_TYPE",
                    message=f"Citation marker [{marker}] has unsupported type '{kind}' (expected R or W)",
                    severity="error",
                    meta={"marker": marker, "type": kind},
                )
            )
            continue
        sources = rag_sources if kind == "R" else web_sources
        label = "RAG" if kind == "R" else "web"
        if index < 0 or index >= len(sources):
            issues.append(
                ValidationIssue(
                    code="MISSING_CITATION_TARGET",
                    message=(
                        f"Citation marker [{marker}] references non-existent {label} source "
                        f"(have {len(sources)} {label} sources)"
                    ),
                    severity="error",
                    meta={"marker": marker, "index": index, "available": len(sources)},
                )
            )
            continue
        cited[kind].add(index)
        source = sources[index]
        if kind == "R" and not (source.title or source.doc_id):
            issues.append(
                ValidationIssue(
                    code="INCOMPLETE_CITATION_TARGET",
                    message=f"RAG source at index {index} missing title/doc_id",
                    severity="warning",
                    meta={"marker": marker, "index": index},
                )
            )
        elif kind == "W" and not source.url:
            issues.append(
                ValidationIssue(
                    code="INCOMPLETE_CITATION_TARGET",
                    message=f"Web source at index {index} missing URL",
                    severity="warning",
                    meta={"marker": marker, "index": index},
                )
            )

    for kind, sources in (("R", rag_sources), ("W", web_sources)):
        for index in range(len(sources)):
            if index in cited[kind]:
                continue
            issues.append(
                ValidationIssue(
                    code="UNUSED_SOURCE",
                    message=f"Source [{kind}{index + 1}] is never cited",
                    severity="warning",
                    meta={"marker": f"{kind}{index + 1}", "index": index},
                )
            )
    return issues


def validate_per_section_citations(
    sections: dict[str, str], sources: list[Source]
) -> list[ValidationIssue]:
    """Require at least one marker in every non-Sources section when sources exist."""
    if not sources:
        return []
    issues: list[ValidationIssue] = []
    for name, content in sections.items():
        if name.strip().lower() == "sources":
            continue
        if not _CITATION_RE.search(content):
            issues.append(
                ValidationIssue(
                    code="MISSING_SECTION_CITATION",
                    message=f"Section '{name}' must include at least one source citation",
                    severity="error",
                    meta={"section": name},
                )
            )
    return issues


def validate_citations(
    text: str,
    sections: dict[str, str],
    sources: list[Source],
    require_sources_section: bool = True,
    require_per_section_citations: bool = False,
) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []
    if require_sources_section and sources and not has_sources_section(sections):
        issues.append(
            ValidationIssue(
                code="NO_SOURCES_SECTION",
                message="Response missing required Sources section",
                severity="error",
            )
        )
    rag_sources = [source for source in sources if source.type == "rag"]
    web_sources = [source for source in sources if source.type == "web"]
    issues.extend(validate_citation_mapping(text, rag_sources, web_sources))
    if require_per_section_citations:
        issues.extend(validate_per_section_citations(sections, sources))
    return issues


def fuzzy_match_section_name(expected: str, actual: str) -> bool:
    """Case-insensitive, abbreviation-tolerant section name comparison."""
    wanted = expected.lower().strip()
    found = actual.lower().strip()
    if not wanted or not found:
        return wanted == found
    if wanted == found or found in wanted or wanted in found:
        return True
    variations = SECTION_NAME_VARIATIONS.get(wanted, [])
    if any(variant in found or found in variant for variant in variations):
        return True
    for known, known_variations in SECTION_NAME_VARIATIONS.items():
        if found == known or found in known_variations:
            if wanted == known or any(
                variant == wanted or variant in wanted for variant in known_variations
            ):
                return True
    return False


def find_section(sections: dict[str, str], name: str) -> str | None:
    wanted = name.lower()
    for key, value in sections.items():
        if key.lower() == wanted:
            return value
    for key, value in sections.items():
        if fuzzy_match_section_name(name, key):
            return value
    return None
