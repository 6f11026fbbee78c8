from __future__ import annotations

"""Retrieval orchestration: embed, search both ways, fuse, sanitize and pack."""

import asyncio
import hashlib
import logging
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any

from src.app.metrics import INJECTION_FLAGS, RATE_LIMITED, RETRIEVAL_LATENCY
from src.loaders.chunking import chunk_pages, chunk_text
from src.rag.citations import ValidationIssue
from src.rag.context import pack_context
from src.rag.embeddings import EmbeddingError, EmbeddingGateway
from src.rag.fusion import (
    FusionConfig,
    apply_score_threshold,
    rerank_pipeline,
    truncate_top_k,
    validate_fusion_config,
)
from src.rag.injection import sanitize_snippet, validate_sources_for_injection
from src.rag.ratelimit import RateLimiter, RateLimitExceeded
from src.rag.types import (
    Embedding,
    IndexedChunk,
    PackedContext,
    PageText,
    RetrievedChunk,
    Source,
)
from src.vectorstore.base import (
    ChunkIndex,
    LexicalSearch,
    SearchBackendError,
    VectorSearch,
)

logger = logging.getLogger(__name__)

MAX_QUERY_LENGTH = 2000


class RetrievalValidationError(ValueError):
    """Raised when retrieval options are invalid; carries every problem found."""

    def __init__(self, errors: list[str]) -> None:
        super().__init__("; ".join(errors))
        self.errors = errors


class RetrievalError(RuntimeError):
    """Raised when a provider fails and retrieval cannot complete."""
    pass


@dataclass(frozen=True)
class RetrievalResult:
    context: PackedContext
    chunks: list[RetrievedChunk]
    stats: dict[str, Any]
    issues: list[ValidationIssue] = field(default_factory=list)


@dataclass(frozen=True)
class IngestResult:
    document_id: str
    chunks: int
    embedded: int


def _query_fingerprint(query: str) -> str:
    return hashlib.sha256(query.encode("utf-8")).hexdigest()[:12]


def validate_retrieval_options(
    tenant_id: str | None,
    query: str | None,
    top_k: int | None = None,
    max_tokens: int | None = None,
    reserve_tokens: int = 0,
) -> list[str]:
    """Return every problem with the request, empty when it is valid."""
    errors: list[str] = []
    if not tenant_id or not str(tenant_id).strip():
        errors.append("tenant_id is required")
    if not query or not str(query).strip():
        errors.append("query is required")
    elif len(query) > MAX_QUERY_LENGTH:
        errors.append(f"query must be at most {MAX_QUERY_LENGTH} characters")
    if top_k is not None and top_k <= 0:
        errors.append("top_k must be positive")
    if max_tokens is not None:
        if max_tokens <= 0:
            errors.append("max_tokens must be positive")
        elif max_tokens <= reserve_tokens:
            errors.append("max_tokens must exceed reserve_tokens")
    return errors


@dataclass
class RetrievalPipeline:
    embeddings: EmbeddingGateway
    lexical: LexicalSearch
    vector: VectorSearch
    index: ChunkIndex
    fusion: FusionConfig = field(default_factory=FusionConfig)
    chunk_size: int = 800
    chunk_overlap: int = 160
    word_break_ratio: float = 0.5
    context_max_tokens: int = 4000
    reserve_tokens: int = 100
    lexical_limit: int = 50
    vector_limit: int = 50
    rate_limiter: RateLimiter | None = None
    search_timeout: float | None = 15.0

    def __post_init__(self) -> None:
        errors = validate_fusion_config(self.fusion)
        if errors:
            raise ValueError("; ".join(errors))

    async def retrieve(
        self,
        tenant_id: str,
        query: str,
        top_k: int | None = None,
        max_tokens: int | None = None,
    ) -> RetrievalResult:
        start = time.monotonic()
        errors = validate_retrieval_options(
            tenant_id, query, top_k, max_tokens, self.reserve_tokens
        )
        if errors:
            raise RetrievalValidationError(errors)
        self._check_rate_limit(tenant_id)
        query_vector = await self._embed_query(tenant_id, query)

        lexical_hits, vector_hits = await self._search_both(tenant_id, query, query_vector)
        fusion = self.fusion if top_k is None else replace(self.fusion, top_k=top_k)
        fused = rerank_pipeline(lexical_hits, vector_hits, fusion)
        safe_chunks, issues = self._sanitize(fused)
        packed = pack_context(
            safe_chunks,
            max_tokens=max_tokens or self.context_max_tokens,
            reserve_tokens=self.reserve_tokens,
        )
        latency = time.monotonic() - start
        RETRIEVAL_LATENCY.labels("hybrid").observe(latency)
        stats = {
            "lexical_results": len(lexical_hits),
            "vector_results": len(vector_hits),
            "fused_results": len(fused),
            "sanitized_results": len(safe_chunks),
            "chunks_used": packed.chunks_used,
            "chunks_truncated": packed.chunks_truncated,
            "total_tokens": packed.token_count,
            "latency_ms": int(latency * 1000),
        }
        logger.info(
            "retrieval_complete",
            extra={
                "tenant_id": tenant_id,
                "query_hash": _query_fingerprint(query),
                "query_length": len(query),
                "injection_flags": len(issues),
                **stats,
            },
        )
        return RetrievalResult(context=packed, chunks=safe_chunks, stats=stats, issues=issues)

    async def retrieve_vector_only(
        self,
        tenant_id: str,
        query: str,
        top_k: int | None = None,
        max_tokens: int | None = None,
    ) -> RetrievalResult:
        start = time.monotonic()
        errors = validate_retrieval_options(
            tenant_id, query, top_k, max_tokens, self.reserve_tokens
        )
        if errors:
            raise RetrievalValidationError(errors)
        self._check_rate_limit(tenant_id)
        query_vector = await self._embed_query(tenant_id, query)
        limit = top_k or self.fusion.top_k
        vector_hits = await self._search(
            self.vector.search(tenant_id, query_vector, max(limit, 1)), "vector"
        )
        ranked = [
            RetrievedChunk(
                id=hit.id,
                content=hit.content,
                metadata=hit.metadata,
                score=hit.score,
                rank=rank,
            )
            for rank, hit in enumerate(vector_hits, start=1)
        ]
        ranked = truncate_top_k(apply_score_threshold(ranked, self.fusion.score_threshold), limit)
        safe_chunks, issues = self._sanitize(ranked)
        packed = pack_context(
            safe_chunks,
            max_tokens=max_tokens or self.context_max_tokens,
            reserve_tokens=self.reserve_tokens,
        )
        latency = time.monotonic() - start
        RETRIEVAL_LATENCY.labels("vector").observe(latency)
        stats = {
            "lexical_results": 0,
            "vector_results": len(vector_hits),
            "fused_results": len(ranked),
            "sanitized_results": len(safe_chunks),
            "chunks_used": packed.chunks_used,
            "chunks_truncated": packed.chunks_truncated,
            "total_tokens": packed.token_count,
            "latency_ms": int(latency * 1000),
        }
        logger.info(
            "vector_retrieval_complete",
            extra={"tenant_id": tenant_id, "query_hash": _query_fingerprint(query), **stats},
        )
        return RetrievalResult(context=packed, chunks=safe_chunks, stats=stats, issues=issues)

    async def ingest_document(
        self,
        tenant_id: str,
        document_id: str,
        document_name: str,
        text: str | None = None,
        pages: list[PageText] | None = None,
    ) -> IngestResult:
        """Chunk, embed and index one document; ids are ``{document_id}:{order}``."""
        if not tenant_id or not document_id:
            raise RetrievalValidationError(["tenant_id and document_id are required"])
        if pages:
            chunks = chunk_pages(
                pages, self.chunk_size, self.chunk_overlap, self.word_break_ratio
            )
        else:
            chunks = chunk_text(
                text or "", self.chunk_size, self.chunk_overlap, self.word_break_ratio
            )
        if not chunks:
            return IngestResult(document_id=document_id, chunks=0, embedded=0)
        try:
            vectors = await self.embeddings.embed_batch([chunk.text for chunk in chunks])
        except EmbeddingError as exc:
            raise RetrievalError(f"Embedding failed for document {document_id}") from exc
        created_at = datetime.now(timezone.utc)
        embeddings = [
            Embedding(chunk_id=f"{document_id}:{chunk.order}", tenant_id=tenant_id, vector=vector)
            for chunk, vector in zip(chunks, vectors)
        ]
        items = [
            IndexedChunk(
                id=embedding.chunk_id,
                tenant_id=embedding.tenant_id,
                document_id=document_id,
                document_name=document_name,
                chunk_index=chunk.order,
                content=chunk.text,
                vector=embedding.vector,
                page=chunk.page,
                created_at=created_at,
            )
            for chunk, embedding in zip(chunks, embeddings)
        ]
        try:
            embedded = await asyncio.to_thread(self.index.upsert, items)
        except SearchBackendError as exc:
            raise RetrievalError(f"Indexing failed for document {document_id}") from exc
        logger.info(
            "document_ingested",
            extra={
                "tenant_id": tenant_id,
                "document_id": document_id,
                "chunks": len(chunks),
            },
        )
        return IngestResult(document_id=document_id, chunks=len(chunks), embedded=embedded)

    async def delete_document(self, tenant_id: str, document_id: str) -> int:
        try:
            return await asyncio.to_thread(self.index.delete_document, tenant_id, document_id)
        except SearchBackendError as exc:
            raise RetrievalError(f"Delete failed for document {document_id}") from exc

    def stats(self) -> dict[str, Any]:
        return self.index.stats()

    def health(self) -> dict[str, Any]:
        return self.index.health()

    def _check_rate_limit(self, tenant_id: str) -> None:
        if self.rate_limiter is not None and not self.rate_limiter.check_limit(tenant_id):
            logger.warning("retrieval_rate_limited", extra={"tenant_id": tenant_id})
            RATE_LIMITED.inc()
            raise RateLimitExceeded(tenant_id)

    async def _embed_query(self, tenant_id: str, query: str) -> list[float]:
        try:
            return await self.embeddings.embed_query(query, tenant_id)
        except EmbeddingError as exc:
            logger.error(
                "retrieval_embedding_failed",
                extra={"tenant_id": tenant_id, "error": str(exc)},
            )
            raise RetrievalError("Query embedding failed") from exc

    async def _search_both(self, tenant_id: str, query: str, query_vector: list[float]):
        """Run both searches concurrently; a failure cancels and reaps the other one."""
        tasks = [
            asyncio.ensure_future(
                self._search(self.lexical.search(tenant_id, query, self.lexical_limit), "lexical")
            ),
            asyncio.ensure_future(
                self._search(
                    self.vector.search(tenant_id, query_vector, self.vector_limit), "vector"
                )
            ),
        ]
        try:
            lexical_hits, vector_hits = await asyncio.gather(*tasks)
        finally:
            pending = [task for task in tasks if not task.done()]
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        return lexical_hits, vector_hits

    async def _search(self, call, method: str):
        try:
            if self.search_timeout is None:
                return await call
            return await asyncio.wait_for(call, timeout=self.search_timeout)
        except asyncio.TimeoutError as exc:
            raise RetrievalError(f"{method} search timed out") from exc
        except SearchBackendError as exc:
            raise RetrievalError(f"{method} search failed") from exc

    def _sanitize(
        self, chunks: list[RetrievedChunk]
    ) -> tuple[list[RetrievedChunk], list[ValidationIssue]]:
        """Scan raw content for injection, then strip markers before anything is packed."""
        sources = [
            Source(
                type="rag",
                snippet=chunk.content,
                title=chunk.metadata.document_name,
                doc_id=chunk.metadata.document_id,
            )
            for chunk in chunks
        ]
        issues = [
            replace(issue, meta={**issue.meta, "chunk_id": chunks[issue.meta["source_index"]].id})
            for issue in validate_sources_for_injection(sources)
        ]
        if issues:
            INJECTION_FLAGS.inc(len(issues))
        cleaned: list[RetrievedChunk] = []
        for chunk in chunks:
            content = sanitize_snippet(chunk.content, max_length=self.chunk_size)
            if not content:
                continue
            cleaned.append(replace(chunk, content=content))
        return cleaned, issues
