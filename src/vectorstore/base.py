from __future__ import annotations

"""Search capability interfaces shared by index backends."""

from typing import Any, Iterable, Protocol

from src.rag.types import IndexedChunk, SearchResult


class SearchInputError(ValueError):
    """Raised when a search is called with an invalid tenant, query or limit."""
    pass


class SearchBackendError(RuntimeError):
    """Raised when the search backend fails."""
    pass


class LexicalSearch(Protocol):
    async def search(self, tenant_id: str, query: str, limit: int) -> list[SearchResult]:
        """Return keyword matches for the tenant, best BM25 score first."""
        raise NotImplementedError


class VectorSearch(Protocol):
    async def search(
        self, tenant_id: str, vector: list[float], limit: int
    ) -> list[SearchResult]:
        """Return nearest neighbours for the tenant, highest similarity first."""
        raise NotImplementedError


class ChunkIndex(Protocol):
    def upsert(self, items: Iterable[IndexedChunk]) -> int:
        raise NotImplementedError

    def delete_document(self, tenant_id: str, document_id: str) -> int:
        raise NotImplementedError

    def stats(self) -> dict[str, Any]:
        raise NotImplementedError

    def health(self) -> dict[str, Any]:
        raise NotImplementedError


def validate_search_input(tenant_id: str, limit: int) -> None:
    if not tenant_id or not tenant_id.strip():
        raise SearchInputError("tenant_id is required")
    if limit <= 0:
        raise SearchInputError("limit must be positive")


def validate_query(query: str) -> str:
    cleaned = (query or "").strip()
    if not cleaned:
        raise SearchInputError("query is required")
    return cleaned


def validate_query_vector(vector: list[float]) -> list[float]:
    if not vector:
        raise SearchInputError("query vector is required")
    return vector


def check_item_dimensions(
    items: Iterable[IndexedChunk], dimension: int | None
) -> list[IndexedChunk]:
    """Materialize items, rejecting the whole batch before any write on a bad vector."""
    batch = list(items)
    if dimension is None:
        return batch
    for item in batch:
        if len(item.vector) != dimension:
            raise SearchBackendError(
                f"Vector dimension mismatch for {item.id}: "
                f"expected {dimension}, got {len(item.vector)}"
            )
    return batch
