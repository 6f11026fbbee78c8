from __future__ import annotations

import pytest

from src.rag.fusion import (
    FusionConfig,
    apply_score_threshold,
    deduplicate_chunks,
    fuse_rrf,
    fuse_weighted,
    normalize_scores,
    rerank_pipeline,
    truncate_top_k,
    validate_fusion_config,
)
from src.rag.types import ChunkMetadata, RetrievedChunk, SearchResult


def hit(chunk_id: str, score: float = 1.0) -> SearchResult:
    return SearchResult(
        id=chunk_id,
        score=score,
        content=f"content of {chunk_id}",
        metadata=ChunkMetadata(document_id="doc", document_name="doc.txt", chunk_index=0),
    )


def retrieved(chunk_id: str, score: float, rank: int) -> RetrievedChunk:
    return RetrievedChunk(
        id=chunk_id,
        content=chunk_id,
        metadata=ChunkMetadata(document_id="doc", document_name="doc.txt", chunk_index=0),
        score=score,
        rank=rank,
    )


def test_rrf_prefers_consensus_hit() -> None:
    lexical = [hit("A"), hit("B"), hit("C")]
    vector = [hit("B"), hit("A"), hit("D")]

    fused = fuse_rrf(lexical, vector, k=60, lexical_weight=0.5, vector_weight=0.5)

    assert [chunk.id for chunk in fused] == ["A", "B", "C", "D"]
    scores = {chunk.id: chunk.score for chunk in fused}
    assert scores["A"] == pytest.approx(0.5 / 61 + 0.5 / 62)
    assert scores["B"] == pytest.approx(scores["A"])
    assert scores["C"] == pytest.approx(0.5 / 63)
    assert scores["D"] == pytest.approx(0.5 / 63)
    assert [chunk.rank for chunk in fused] == [1, 2, 3, 4]


def test_rrf_reference_lists() -> None:
    lexical = [hit("A"), hit("B"), hit("C")]
    vector = [hit("B"), hit("C"), hit("A")]

    fused = fuse_rrf(lexical, vector, k=60, lexical_weight=0.5, vector_weight=0.5)
    scores = {chunk.id: chunk.score for chunk in fused}

    assert scores["B"] == pytest.approx(0.5 / 62 + 0.5 / 61)
    assert scores["A"] == pytest.approx(0.5 / 61 + 0.5 / 63)
    assert scores["C"] == pytest.approx(0.5 / 63 + 0.5 / 62)
    assert [chunk.id for chunk in fused] == ["B", "A", "C"]


def test_rrf_equal_scores_fall_back_to_first_seen_order() -> None:
    lexical = [hit("A"), hit("B"), hit("C")]
    vector = [hit("C"), hit("B"), hit("A")]

    fused = fuse_rrf(lexical, vector, k=60, lexical_weight=0.5, vector_weight=0.5)

    assert fused[0].score == fused[1].score
    assert [chunk.id for chunk in fused] == ["A", "C", "B"]


def test_rrf_single_list_preserves_order() -> None:
    vector = [hit("x"), hit("y"), hit("z")]

    fused = fuse_rrf([], vector, lexical_weight=0.3, vector_weight=0.7)

    assert [chunk.id for chunk in fused] == ["x", "y", "z"]
    assert fused[0].score == pytest.approx(0.7 / 61)


def test_rrf_score_is_monotonic_in_rank() -> None:
    lexical = [hit(str(index)) for index in range(10)]

    fused = fuse_rrf(lexical, [], lexical_weight=1.0, vector_weight=1.0)
    scores = [chunk.score for chunk in fused]

    assert scores == sorted(scores, reverse=True)
    assert len(set(scores)) == len(scores)


def test_rrf_keeps_first_rank_for_repeated_ids() -> None:
    fused = fuse_rrf([hit("a"), hit("b"), hit("a")], [], lexical_weight=1.0, vector_weight=0.0)

    assert [chunk.id for chunk in fused] == ["a", "b"]
    assert fused[0].score == pytest.approx(1.0 / 61)


def test_empty_inputs_produce_empty_output() -> None:
    assert fuse_rrf([], []) == []
    assert fuse_weighted([], []) == []
    assert rerank_pipeline([], []) == []


def test_normalize_scores() -> None:
    assert normalize_scores([]) == []
    assert normalize_scores([3.0, 3.0]) == [1.0, 1.0]
    assert normalize_scores([2.0, 4.0, 3.0]) == [0.0, 1.0, 0.5]


def test_weighted_fusion_combines_normalized_scores() -> None:
    lexical = [hit("a", 10.0), hit("b", 5.0), hit("c", 0.0)]
    vector = [hit("b", 0.9), hit("a", 0.1)]

    fused = fuse_weighted(lexical, vector, lexical_weight=0.5, vector_weight=0.5)
    scores = {chunk.id: chunk.score for chunk in fused}

    assert scores["a"] == pytest.approx(0.5)
    assert scores["b"] == pytest.approx(0.75)
    assert scores["c"] == pytest.approx(0.0)
    assert [chunk.id for chunk in fused] == ["b", "a", "c"]


def test_deduplicate_keeps_best_rank() -> None:
    chunks = [retrieved("a", 0.2, 3), retrieved("a", 0.9, 1), retrieved("b", 0.5, 2)]

    result = deduplicate_chunks(chunks)

    assert [(chunk.id, chunk.rank) for chunk in result] == [("a", 1), ("b", 2)]


def test_threshold_and_top_k() -> None:
    chunks = [retrieved("a", 0.9, 1), retrieved("b", 0.5, 2), retrieved("c", 0.05, 3)]

    assert [chunk.id for chunk in apply_score_threshold(chunks, 0.5)] == ["a", "b"]
    assert truncate_top_k(chunks, 2) == chunks[:2]
    assert truncate_top_k(chunks, 0) == []


def test_rerank_pipeline_renumbers_ranks() -> None:
    lexical = [hit(f"l{index}") for index in range(5)]
    vector = [hit(f"v{index}") for index in range(5)]
    config = FusionConfig(lexical_weight=1.0, vector_weight=1.0, score_threshold=0.0, top_k=3)

    result = rerank_pipeline(lexical, vector, config)

    assert len(result) == 3
    assert [chunk.rank for chunk in result] == [1, 2, 3]
    assert all(chunk.score >= 0.0 for chunk in result)


def test_default_threshold_drops_weak_lexical_only_hits() -> None:
    result = rerank_pipeline([hit("lexical-only")], [hit("top"), hit("second")])

    ids = [chunk.id for chunk in result]
    assert "lexical-only" not in ids
    assert ids == ["top", "second"]


@pytest.mark.parametrize(
    "config",
    [
        FusionConfig(method="borda"),
        FusionConfig(k=0),
        FusionConfig(lexical_weight=-0.1),
        FusionConfig(lexical_weight=0.0, vector_weight=0.0),
        FusionConfig(score_threshold=-1.0),
        FusionConfig(top_k=0),
    ],
)
def test_invalid_config_is_rejected(config: FusionConfig) -> None:
    assert validate_fusion_config(config)
    with pytest.raises(ValueError):
        rerank_pipeline([hit("a")], [], config)
