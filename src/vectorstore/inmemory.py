from __future__ import annotations

"""In-memory hybrid index for local runs and tests, partitioned per tenant."""

import logging
import math
import re
import threading
from dataclasses import dataclass, field
from typing import Any, Iterable

from rank_bm25 import BM25Okapi

from src.rag.types import IndexedChunk, SearchResult
from src.vectorstore.base import (
    check_item_dimensions,
    validate_query,
    validate_query_vector,
    validate_search_input,
)

logger = logging.getLogger(__name__)

_WORD_RE = re.compile(r"[a-z0-9_]+")


def tokenize(text: str) -> list[str]:
    return _WORD_RE.findall(text.lower())


@dataclass
class _Partition:
    chunks: dict[str, IndexedChunk] = field(default_factory=dict)
    bm25: BM25Okapi | None = None
    ordered: list[IndexedChunk] = field(default_factory=list)
    tokens: list[set[str]] = field(default_factory=list)
    dirty: bool = True

    def refresh(self) -> None:
        if not self.dirty:
            return
        self.ordered = list(self.chunks.values())
        tokenized = [tokenize(chunk.content) for chunk in self.ordered]
        self.tokens = [set(tokens) for tokens in tokenized]
        # BM25Okapi divides by corpus size
        self.bm25 = BM25Okapi(tokenized) if self.ordered else None
        self.dirty = False


class InMemoryIndex:
    """Tenant-partitioned chunk index with BM25 keyword and cosine vector search.

    A search only ever reads the requested tenant's partition.
    """

    def __init__(self, dimension: int | None = None) -> None:
        self.dimension = dimension
        self._partitions: dict[str, _Partition] = {}
        self._lock = threading.Lock()
        self.lexical = _LexicalAdapter(self)
        self.vector = _VectorAdapter(self)

    def upsert(self, items: Iterable[IndexedChunk]) -> int:
        batch = check_item_dimensions(items, self.dimension)
        count = 0
        with self._lock:
            for item in batch:
                partition = self._partitions.setdefault(item.tenant_id, _Partition())
                partition.chunks[item.id] = item
                partition.dirty = True
                count += 1
        return count

    def delete_document(self, tenant_id: str, document_id: str) -> int:
        with self._lock:
            partition = self._partitions.get(tenant_id)
            if partition is None:
                return 0
            doomed = [
                chunk_id
                for chunk_id, chunk in partition.chunks.items()
                if chunk.document_id == document_id
            ]
            for chunk_id in doomed:
                del partition.chunks[chunk_id]
            if doomed:
                partition.dirty = True
        logger.info(
            "index_document_deleted",
            extra={"tenant_id": tenant_id, "document_id": document_id, "removed": len(doomed)},
        )
        return len(doomed)

    def get(self, tenant_id: str, chunk_id: str) -> IndexedChunk | None:
        partition = self._partitions.get(tenant_id)
        if partition is None:
            return None
        return partition.chunks.get(chunk_id)

    def count(self, tenant_id: str | None = None) -> int:
        if tenant_id is not None:
            partition = self._partitions.get(tenant_id)
            return len(partition.chunks) if partition else 0
        return sum(len(partition.chunks) for partition in self._partitions.values())

    def stats(self) -> dict[str, Any]:
        return {
            "backend": "memory",
            "tenant_count": len(self._partitions),
            "chunk_count": self.count(),
            "embedding_dimension": self.dimension,
        }

    def health(self) -> dict[str, Any]:
        return {"backend": "memory", "ok": True}

    def _snapshot(self, tenant_id: str) -> _Partition | None:
        with self._lock:
            partition = self._partitions.get(tenant_id)
            if partition is None:
                return None
            partition.refresh()
            snapshot = _Partition(
                chunks=partition.chunks,
                bm25=partition.bm25,
                ordered=partition.ordered,
                tokens=partition.tokens,
                dirty=False,
            )
        return snapshot

    def search_lexical(self, tenant_id: str, query: str, limit: int) -> list[SearchResult]:
        validate_search_input(tenant_id, limit)
        cleaned = validate_query(query)
        partition = self._snapshot(tenant_id)
        if partition is None or partition.bm25 is None:
            return []
        query_tokens = tokenize(cleaned)
        if not query_tokens:
            return []
        wanted = set(query_tokens)
        scores = partition.bm25.get_scores(query_tokens)
        matched = [
            (float(scores[idx]), idx)
            for idx, tokens in enumerate(partition.tokens)
            if tokens & wanted
        ]
        matched.sort(key=lambda item: (-item[0], item[1]))
        return [
            _to_result(partition.ordered[idx], score) for score, idx in matched[:limit]
        ]

    def search_vector(
        self, tenant_id: str, vector: list[float], limit: int
    ) -> list[SearchResult]:
        validate_search_input(tenant_id, limit)
        validate_query_vector(vector)
        partition = self._snapshot(tenant_id)
        if partition is None:
            return []
        scored = [
            (_cosine_similarity(vector, chunk.vector), idx)
            for idx, chunk in enumerate(partition.ordered)
        ]
        scored.sort(key=lambda item: (-item[0], item[1]))
        return [_to_result(partition.ordered[idx], score) for score, idx in scored[:limit]]


class _LexicalAdapter:
    def __init__(self, index: InMemoryIndex) -> None:
        self._index = index

    async def search(self, tenant_id: str, query: str, limit: int) -> list[SearchResult]:
        return self._index.search_lexical(tenant_id, query, limit)


class _VectorAdapter:
    def __init__(self, index: InMemoryIndex) -> None:
        self._index = index

    async def search(
        self, tenant_id: str, vector: list[float], limit: int
    ) -> list[SearchResult]:
        return self._index.search_vector(tenant_id, vector, limit)


def _to_result(chunk: IndexedChunk, score: float) -> SearchResult:
    return SearchResult(
        id=chunk.id,
        score=score,
        content=chunk.content,
        metadata=chunk.to_metadata(),
    )


def _cosine_similarity(a: list[float], b: list[float]) -> float:
    """Compute cosine similarity between two vectors."""
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return dot / (norm_a * norm_b)
