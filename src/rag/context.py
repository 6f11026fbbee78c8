from __future__ import annotations

"""Token-budgeted packing of ranked chunks into a citation-annotated context."""

import logging
import math
from dataclasses import dataclass, field
from numbers import Real

from src.rag.types import Citation, PackedContext, RetrievedChunk

logger = logging.getLogger(__name__)

DEFAULT_CHARS_PER_TOKEN = 4.0
DEFAULT_RESERVE_TOKENS = 100
EXCERPT_LENGTH = 100


def estimate_tokens(text: str, chars_per_token: float = DEFAULT_CHARS_PER_TOKEN) -> int:
    """Approximate token count as ``ceil(len(text) / chars_per_token)``."""
    if not text:
        return 0
    return math.ceil(len(text) / chars_per_token)


def format_chunk(chunk: RetrievedChunk, citation_id: int) -> str:
    header = f"[R{citation_id}] {chunk.metadata.document_name}"
    if chunk.metadata.page is not None:
        header += f" (p. {chunk.metadata.page})"
    return f"{header}:\n{chunk.content}\n"


def build_citation(chunk: RetrievedChunk, citation_id: int) -> Citation:
    content = chunk.content
    excerpt = content[:EXCERPT_LENGTH] + "..." if len(content) > EXCERPT_LENGTH else content
    return Citation(
        id=citation_id,
        source=chunk.metadata.document_name,
        page=chunk.metadata.page,
        section=chunk.metadata.section,
        excerpt=excerpt,
    )


def pack_context(
    chunks: list[RetrievedChunk],
    max_tokens: int,
    reserve_tokens: int = DEFAULT_RESERVE_TOKENS,
    chars_per_token: float = DEFAULT_CHARS_PER_TOKEN,
) -> PackedContext:
    """Greedily add chunks in rank order while they fit ``max_tokens - reserve_tokens``.

    A chunk that does not fit is counted as truncated and packing moves on to
    the next, smaller candidate. Citation ids follow acceptance order.
    """
    budget = max(0, max_tokens - reserve_tokens)
    parts: list[str] = []
    citations: list[Citation] = []
    used_tokens = 0
    truncated = 0
    for chunk in chunks:
        citation_id = len(citations) + 1
        formatted = format_chunk(chunk, citation_id)
        cost = estimate_tokens(formatted, chars_per_token)
        if used_tokens + cost > budget:
            truncated += 1
            continue
        parts.append(formatted)
        citations.append(build_citation(chunk, citation_id))
        used_tokens += cost
    logger.debug(
        "context_packed",
        extra={
            "chunks_used": len(citations),
            "chunks_truncated": truncated,
            "token_count": used_tokens,
            "budget": budget,
        },
    )
    return PackedContext(
        context="\n".join(parts),
        citations=citations,
        token_count=used_tokens,
        chunks_used=len(citations),
        chunks_truncated=truncated,
    )


@dataclass(frozen=True)
class ChunkValidation:
    valid: bool
    errors: list[str] = field(default_factory=list)


def validate_chunks(chunks: list[RetrievedChunk]) -> ChunkValidation:
    """Check every chunk and collect all problems rather than stopping at the first."""
    errors: list[str] = []
    previous_rank: int | None = None
    for position, chunk in enumerate(chunks):
        label = f"chunk {position}"
        if not chunk.id:
            errors.append(f"{label}: missing id")
        if not chunk.content or not chunk.content.strip():
            errors.append(f"{label}: empty content")
        metadata = chunk.metadata
        if metadata is None:
            errors.append(f"{label}: missing metadata")
        else:
            if not metadata.document_id or not str(metadata.document_id).strip():
                errors.append(f"{label}: missing metadata.document_id")
            if not metadata.document_name:
                errors.append(f"{label}: missing metadata.document_name")
            if metadata.chunk_index is None or metadata.chunk_index < 0:
                errors.append(f"{label}: invalid metadata.chunk_index")
        if isinstance(chunk.score, bool) or not isinstance(chunk.score, Real) or math.isnan(
            chunk.score
        ):
            errors.append(f"{label}: non-numeric score")
        if previous_rank is not None and chunk.rank < previous_rank:
            errors.append(f"{label}: rank {chunk.rank} out of order after {previous_rank}")
        previous_rank = chunk.rank
    return ChunkValidation(valid=not errors, errors=errors)


def format_citation_line(citation: Citation) -> str:
    line = f"[{citation.marker}] {citation.source}"
    if citation.page is not None:
        line += f", p. {citation.page}"
    if citation.section:
        line += f", §{citation.section}"
    if citation.url:
        line += f" - {citation.url}"
    return line


def format_sources(citations: list[Citation]) -> str:
    if not citations:
        return ""
    lines = ["Sources:"]
    lines.extend(format_citation_line(citation) for citation in citations)
    return "\n".join(lines)
