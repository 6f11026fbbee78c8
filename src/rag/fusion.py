from __future__ import annotations

"""Rank fusion of lexical and vector hits into one ordered list."""

import logging
from dataclasses import dataclass, replace
from typing import Iterable

from src.rag.types import ChunkMetadata, RetrievedChunk, SearchResult

logger = logging.getLogger(__name__)

FUSION_METHODS = {"rrf", "weighted"}


@dataclass(frozen=True)
class FusionConfig:
    """Fusion settings; weights apply to the lexical and vector lists."""
    method: str = "rrf"
    k: int = 60
    lexical_weight: float = 0.3
    vector_weight: float = 0.7
    score_threshold: float = 0.01
    top_k: int = 20


@dataclass
class _Candidate:
    id: str
    content: str
    metadata: ChunkMetadata
    order: int
    lexical_rank: int | None = None
    vector_rank: int | None = None
    lexical_score: float | None = None
    vector_score: float | None = None
    score: float = 0.0

    @property
    def in_both(self) -> bool:
        return self.lexical_rank is not None and self.vector_rank is not None


def _collect(
    lexical: Iterable[SearchResult], vector: Iterable[SearchResult]
) -> tuple[dict[str, _Candidate], int, int]:
    """Merge both lists by id, keeping each id's first (best) rank per list."""
    candidates: dict[str, _Candidate] = {}
    lexical = list(lexical)
    vector = list(vector)
    for rank, hit in enumerate(lexical, start=1):
        candidate = candidates.get(hit.id)
        if candidate is None:
            candidate = _Candidate(hit.id, hit.content, hit.metadata, order=len(candidates))
            candidates[hit.id] = candidate
        if candidate.lexical_rank is None:
            candidate.lexical_rank = rank
            candidate.lexical_score = hit.score
    for rank, hit in enumerate(vector, start=1):
        candidate = candidates.get(hit.id)
        if candidate is None:
            candidate = _Candidate(hit.id, hit.content, hit.metadata, order=len(candidates))
            candidates[hit.id] = candidate
        if candidate.vector_rank is None:
            candidate.vector_rank = rank
            candidate.vector_score = hit.score
    return candidates, len(lexical), len(vector)


def _rank(candidates: Iterable[_Candidate], lexical_len: int, vector_len: int) -> list[RetrievedChunk]:
    """Sort by fused score, then presence in both lists, combined raw rank, first-seen order."""

    def sort_key(candidate: _Candidate) -> tuple[float, int, int, int]:
        lexical_rank = candidate.lexical_rank or lexical_len + 1
        vector_rank = candidate.vector_rank or vector_len + 1
        return (
            -candidate.score,
            0 if candidate.in_both else 1,
            lexical_rank + vector_rank,
            candidate.order,
        )

    ordered = sorted(candidates, key=sort_key)
    return [
        RetrievedChunk(
            id=candidate.id,
            content=candidate.content,
            metadata=candidate.metadata,
            score=candidate.score,
            rank=rank,
        )
        for rank, candidate in enumerate(ordered, start=1)
    ]


def fuse_rrf(
    lexical: list[SearchResult],
    vector: list[SearchResult],
    k: int = 60,
    lexical_weight: float = 0.3,
    vector_weight: float = 0.7,
) -> list[RetrievedChunk]:
    """Weighted reciprocal rank fusion: ``score = sum(w / (k + rank))`` over the lists."""
    candidates, lexical_len, vector_len = _collect(lexical, vector)
    for candidate in candidates.values():
        score = 0.0
        if candidate.lexical_rank is not None:
            score += lexical_weight / (k + candidate.lexical_rank)
        if candidate.vector_rank is not None:
            score += vector_weight / (k + candidate.vector_rank)
        candidate.score = score
    return _rank(candidates.values(), lexical_len, vector_len)


def normalize_scores(scores: list[float]) -> list[float]:
    """Min-max normalize to [0, 1]; a list of equal scores maps to 1.0."""
    if not scores:
        return []
    low = min(scores)
    high = max(scores)
    if high == low:
        return [1.0 for _ in scores]
    span = high - low
    return [(score - low) / span for score in scores]


def fuse_weighted(
    lexical: list[SearchResult],
    vector: list[SearchResult],
    lexical_weight: float = 0.3,
    vector_weight: float = 0.7,
) -> list[RetrievedChunk]:
    """Weighted sum of per-list min-max normalized scores; a missing hit contributes 0."""
    candidates, lexical_len, vector_len = _collect(lexical, vector)
    members = list(candidates.values())
    lexical_members = [c for c in members if c.lexical_score is not None]
    vector_members = [c for c in members if c.vector_score is not None]
    lexical_norm = dict(
        zip(
            (c.id for c in lexical_members),
            normalize_scores([c.lexical_score for c in lexical_members]),
        )
    )
    vector_norm = dict(
        zip(
            (c.id for c in vector_members),
            normalize_scores([c.vector_score for c in vector_members]),
        )
    )
    for candidate in members:
        candidate.score = lexical_weight * lexical_norm.get(
            candidate.id, 0.0
        ) + vector_weight * vector_norm.get(candidate.id, 0.0)
    return _rank(members, lexical_len, vector_len)


def deduplicate_chunks(chunks: list[RetrievedChunk]) -> list[RetrievedChunk]:
    """Keep the best occurrence per id (lowest rank, then highest score), in rank order."""
    best: dict[str, RetrievedChunk] = {}
    for chunk in chunks:
        current = best.get(chunk.id)
        if current is None or (chunk.rank, -chunk.score) < (current.rank, -current.score):
            best[chunk.id] = chunk
    return sorted(best.values(), key=lambda chunk: (chunk.rank, -chunk.score))


def apply_score_threshold(chunks: list[RetrievedChunk], threshold: float) -> list[RetrievedChunk]:
    return [chunk for chunk in chunks if chunk.score >= threshold]


def truncate_top_k(chunks: list[RetrievedChunk], top_k: int) -> list[RetrievedChunk]:
    if top_k <= 0:
        return []
    return chunks[:top_k]


def validate_fusion_config(config: FusionConfig) -> list[str]:
    errors: list[str] = []
    if config.method not in FUSION_METHODS:
        errors.append(f"method must be one of {sorted(FUSION_METHODS)}")
    if config.k <= 0:
        errors.append("k must be positive")
    if config.lexical_weight < 0 or config.vector_weight < 0:
        errors.append("weights must be non-negative")
    elif config.lexical_weight + config.vector_weight <= 0:
        errors.append("at least one weight must be positive")
    if config.score_threshold < 0:
        errors.append("score_threshold must be non-negative")
    if config.top_k <= 0:
        errors.append("top_k must be positive")
    return errors


def rerank_pipeline(
    lexical: list[SearchResult],
    vector: list[SearchResult],
    config: FusionConfig | None = None,
) -> list[RetrievedChunk]:
    """Fuse, de-duplicate, threshold and truncate, then renumber ranks from 1."""
    config = config or FusionConfig()
    errors = validate_fusion_config(config)
    if errors:
        raise ValueError("; ".join(errors))
    if config.method == "weighted":
        fused = fuse_weighted(lexical, vector, config.lexical_weight, config.vector_weight)
    else:
        fused = fuse_rrf(lexical, vector, config.k, config.lexical_weight, config.vector_weight)
    kept = truncate_top_k(
        apply_score_threshold(deduplicate_chunks(fused), config.score_threshold),
        config.top_k,
    )
    logger.debug(
        "fusion_complete",
        extra={
            "method": config.method,
            "lexical": len(lexical),
            "vector": len(vector),
            "fused": len(fused),
            "kept": len(kept),
        },
    )
    return [replace(chunk, rank=rank) for rank, chunk in enumerate(kept, start=1)]
