from __future__ import annotations

import pytest

from src.rag.context import (
    build_citation,
    estimate_tokens,
    format_chunk,
    format_sources,
    pack_context,
    validate_chunks,
)
from src.rag.types import ChunkMetadata, Citation, RetrievedChunk


def make_chunk(
    index: int,
    content: str,
    name: str = "a.txt",
    page: int | None = None,
    rank: int | None = None,
) -> RetrievedChunk:
    return RetrievedChunk(
        id=f"doc:{index}",
        content=content,
        metadata=ChunkMetadata(
            document_id="doc", document_name=name, chunk_index=index, page=page
        ),
        score=1.0 / (index + 1),
        rank=rank if rank is not None else index + 1,
    )


def test_estimate_tokens() -> None:
    assert estimate_tokens("") == 0
    assert estimate_tokens("abcd") == 1
    assert estimate_tokens("abcde") == 2


def test_format_chunk_includes_marker_and_page() -> None:
    chunk = make_chunk(0, "Revenue grew.", name="report.pdf", page=4)

    assert format_chunk(chunk, 2) == "[R2] report.pdf (p. 4):\nRevenue grew.\n"


def test_pack_context_respects_budget() -> None:
    chunks = [make_chunk(index, "x" * 1187) for index in range(5)]
    assert estimate_tokens(format_chunk(chunks[0], 1)) == 300

    packed = pack_context(chunks, max_tokens=1000, reserve_tokens=100)

    assert packed.chunks_used == 3
    assert packed.chunks_truncated == 2
    assert packed.token_count == 900
    assert [citation.id for citation in packed.citations] == [1, 2, 3]
    assert "[R3] a.txt:" in packed.context
    assert "[R4]" not in packed.context


def test_pack_context_skips_oversized_chunk_and_continues() -> None:
    chunks = [
        make_chunk(0, "first " * 50),
        make_chunk(1, "y" * 8000),
        make_chunk(2, "third " * 50),
    ]

    packed = pack_context(chunks, max_tokens=600, reserve_tokens=100)

    assert packed.chunks_used == 2
    assert packed.chunks_truncated == 1
    assert [citation.id for citation in packed.citations] == [1, 2]
    assert "[R2] a.txt:\nthird" in packed.context


@pytest.mark.parametrize("count", [0, 1, 7])
def test_pack_context_conserves_chunks(count: int) -> None:
    chunks = [make_chunk(index, "z" * 600) for index in range(count)]

    packed = pack_context(chunks, max_tokens=700)

    assert packed.chunks_used + packed.chunks_truncated == count
    assert packed.token_count <= 600


def test_pack_context_with_no_chunks() -> None:
    packed = pack_context([], max_tokens=1000)

    assert packed.context == ""
    assert packed.citations == []
    assert packed.token_count == 0


def test_citation_excerpt_is_truncated() -> None:
    citation = build_citation(make_chunk(0, "w" * 150, page=2), 1)

    assert citation.excerpt == "w" * 100 + "..."
    assert citation.page == 2
    assert citation.marker == "R1"
    short = build_citation(make_chunk(1, "short text"), 2)
    assert short.excerpt == "short text"


def test_validate_chunks_collects_every_error() -> None:
    bad = RetrievedChunk(
        id="",
        content="  ",
        metadata=ChunkMetadata(document_id="", document_name="", chunk_index=-1),
        score=float("nan"),
        rank=1,
    )

    result = validate_chunks([make_chunk(0, "fine", rank=2), bad])

    assert result.valid is False
    joined = " ".join(result.errors)
    for problem in ("missing id", "empty content", "document_id", "document_name", "chunk_index", "score", "out of order"):
        assert problem in joined


def test_validate_chunks_accepts_well_formed_list() -> None:
    chunks = [make_chunk(index, f"content {index}") for index in range(3)]

    assert validate_chunks(chunks).valid is True


def test_format_sources() -> None:
    citations = [
        Citation(id=1, source="report.pdf", page=3),
        Citation(id=2, source="wiki", url="https://example.com/page"),
    ]

    assert format_sources(citations) == (
        "Sources:\n[R1] report.pdf, p. 3\n[R2] wiki - https://example.com/page"
    )
    assert format_sources([]) == ""
