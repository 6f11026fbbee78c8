from __future__ import annotations

import pytest

from src.rag.embeddings import HashEmbedder
from src.rag.types import IndexedChunk
from src.vectorstore.base import SearchBackendError, SearchInputError
from src.vectorstore.inmemory import InMemoryIndex, tokenize

pytestmark = pytest.mark.anyio

EMBEDDER = HashEmbedder(dimension=64)


def make_chunk(tenant_id: str, document_id: str, index: int, content: str) -> IndexedChunk:
    return IndexedChunk(
        id=f"{document_id}:{index}",
        tenant_id=tenant_id,
        document_id=document_id,
        document_name=f"{document_id}.txt",
        chunk_index=index,
        content=content,
        vector=EMBEDDER.embed([content])[0],
    )


@pytest.fixture
def index() -> InMemoryIndex:
    store = InMemoryIndex(dimension=64)
    store.upsert(
        [
            make_chunk("acme", "pricing", 0, "Enterprise pricing starts at 40 dollars per seat."),
            make_chunk("acme", "pricing", 1, "Discounts apply to annual contracts."),
            make_chunk("acme", "handbook", 0, "Vacation policy grants 25 days per year."),
            make_chunk("globex", "secret", 0, "Globex enterprise pricing is confidential."),
        ]
    )
    return store


def test_tokenize() -> None:
    assert tokenize("Q3 Revenue, up_to 12%!") == ["q3", "revenue", "up_to", "12"]


def test_lexical_search_returns_only_matching_chunks(index: InMemoryIndex) -> None:
    results = index.search_lexical("acme", "enterprise pricing", limit=10)

    assert [result.id for result in results] == ["pricing:0"]
    assert results[0].metadata.document_name == "pricing.txt"


def test_lexical_search_is_tenant_scoped(index: InMemoryIndex) -> None:
    acme_ids = {result.id for result in index.search_lexical("acme", "confidential", limit=10)}
    globex_ids = {result.id for result in index.search_lexical("globex", "pricing", limit=10)}

    assert acme_ids == set()
    assert globex_ids == {"secret:0"}


def test_vector_search_ranks_by_similarity(index: InMemoryIndex) -> None:
    query = EMBEDDER.embed(["Vacation policy grants 25 days per year."])[0]

    results = index.search_vector("acme", query, limit=2)

    assert len(results) == 2
    assert results[0].id == "handbook:0"
    assert results[0].score == pytest.approx(1.0)
    assert all(result.id != "secret:0" for result in results)


def test_unknown_tenant_returns_nothing(index: InMemoryIndex) -> None:
    assert index.search_lexical("initech", "pricing", limit=5) == []
    assert index.search_vector("initech", [1.0] * 64, limit=5) == []


def test_invalid_search_input(index: InMemoryIndex) -> None:
    with pytest.raises(SearchInputError):
        index.search_lexical("", "pricing", limit=5)
    with pytest.raises(SearchInputError):
        index.search_lexical("acme", "   ", limit=5)
    with pytest.raises(SearchInputError):
        index.search_vector("acme", [], limit=5)
    with pytest.raises(SearchInputError):
        index.search_vector("acme", [1.0] * 64, limit=0)


def test_upsert_replaces_existing_id(index: InMemoryIndex) -> None:
    index.upsert([make_chunk("acme", "pricing", 0, "Starter plan is free.")])

    assert index.count("acme") == 3
    assert index.get("acme", "pricing:0").content == "Starter plan is free."
    assert index.search_lexical("acme", "enterprise", limit=5) == []


def test_upsert_rejects_wrong_dimension_before_writing() -> None:
    store = InMemoryIndex(dimension=8)
    good = IndexedChunk(
        id="d:0",
        tenant_id="acme",
        document_id="d",
        document_name="d.txt",
        chunk_index=0,
        content="text",
        vector=HashEmbedder(dimension=8).embed(["text"])[0],
    )
    bad = IndexedChunk(
        id="d:1",
        tenant_id="acme",
        document_id="d",
        document_name="d.txt",
        chunk_index=1,
        content="text",
        vector=[0.1, 0.2],
    )

    with pytest.raises(SearchBackendError, match="d:1"):
        store.upsert([good, bad])
    assert store.count("acme") == 0


def test_delete_document_only_touches_one_tenant(index: InMemoryIndex) -> None:
    assert index.delete_document("globex", "pricing") == 0
    assert index.delete_document("acme", "pricing") == 2

    assert index.count("acme") == 1
    assert index.count("globex") == 1
    assert index.search_lexical("acme", "discounts", limit=5) == []


def test_stats_and_health(index: InMemoryIndex) -> None:
    stats = index.stats()

    assert stats == {
        "backend": "memory",
        "tenant_count": 2,
        "chunk_count": 4,
        "embedding_dimension": 64,
    }
    assert index.health()["ok"] is True


async def test_async_adapters_delegate(index: InMemoryIndex) -> None:
    lexical = await index.lexical.search("acme", "vacation", 5)
    vector = await index.vector.search("acme", EMBEDDER.embed(["discounts"])[0], 1)

    assert [result.id for result in lexical] == ["handbook:0"]
    assert len(vector) == 1
