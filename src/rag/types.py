from __future__ import annotations

"""Core data types for chunks, search hits and packed context."""

from dataclasses import dataclass
from datetime import datetime
from typing import Any


@dataclass(frozen=True)
class Chunk:
    """Bounded span of a source document."""
    text: str
    order: int
    content_hash: str
    page: int | None = None


@dataclass(frozen=True)
class PageText:
    """Extracted text of a single document page."""
    page_num: int
    text: str


@dataclass(frozen=True)
class Embedding:
    """Vector owned by exactly one chunk of one tenant."""
    chunk_id: str
    tenant_id: str
    vector: list[float]


@dataclass(frozen=True)
class ChunkMetadata:
    """Attribution metadata carried by every search hit."""
    document_id: str
    document_name: str
    chunk_index: int
    page: int | None = None
    section: str | None = None
    timestamp: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "document_id": self.document_id,
            "document_name": self.document_name,
            "chunk_index": self.chunk_index,
        }
        for key in ("page", "section", "timestamp"):
            value = getattr(self, key)
            if value is not None:
                payload[key] = value
        return payload


@dataclass(frozen=True)
class SearchResult:
    """Single hit from a lexical or vector search, scored on the method's own scale."""
    id: str
    score: float
    content: str
    metadata: ChunkMetadata


@dataclass(frozen=True)
class RetrievedChunk:
    """Fused, comparable representation of a search hit."""
    id: str
    content: str
    metadata: ChunkMetadata
    score: float
    rank: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "content": self.content,
            "metadata": self.metadata.to_dict(),
            "score": self.score,
            "rank": self.rank,
        }


@dataclass(frozen=True)
class Citation:
    """Attribution record for one packed chunk."""
    id: int
    source: str
    page: int | None = None
    section: str | None = None
    url: str | None = None
    excerpt: str | None = None

    @property
    def marker(self) -> str:
        return f"R{self.id}"

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"id": self.id, "marker": self.marker, "source": self.source}
        for key in ("page", "section", "url", "excerpt"):
            value = getattr(self, key)
            if value is not None:
                payload[key] = value
        return payload


@dataclass(frozen=True)
class PackedContext:
    """Citation-annotated context handed to the language model."""
    context: str
    citations: list[Citation]
    token_count: int
    chunks_used: int
    chunks_truncated: int


@dataclass(frozen=True)
class IndexedChunk:
    """Chunk row as stored by an index backend."""
    id: str
    tenant_id: str
    document_id: str
    document_name: str
    chunk_index: int
    content: str
    vector: list[float]
    page: int | None = None
    created_at: datetime | None = None

    def to_metadata(self) -> ChunkMetadata:
        return ChunkMetadata(
            document_id=self.document_id,
            document_name=self.document_name,
            chunk_index=self.chunk_index,
            page=self.page,
            timestamp=self.created_at.isoformat() if self.created_at else None,
        )


@dataclass(frozen=True)
class Source:
    """Retrieval or web source referenced by generated output."""
    type: str
    snippet: str
    title: str | None = None
    url: str | None = None
    doc_id: str | None = None
    published_at: datetime | None = None
