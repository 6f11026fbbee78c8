from __future__ import annotations

"""Milvus-backed chunk index with dense and BM25 sparse search, scoped per tenant."""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable

from src.rag.embeddings import EmbeddingConfigError
from src.rag.types import ChunkMetadata, IndexedChunk, SearchResult
from src.vectorstore.base import (
    SearchBackendError,
    check_item_dimensions,
    validate_query,
    validate_query_vector,
    validate_search_input,
)

logger = logging.getLogger(__name__)

_OUTPUT_FIELDS = [
    "id",
    "tenant_id",
    "document_id",
    "document_name",
    "chunk_index",
    "page",
    "created_at",
    "content",
]
_NO_PAGE = -1


class MilvusDependencyError(RuntimeError):
    """Raised when Milvus dependencies are missing."""
    pass


@dataclass
class MilvusConfig:
    """Configuration for Milvus connection and indexing."""
    uri: str
    token: str | None
    collection: str
    consistency: str
    index_type: str
    nlist: int
    nprobe: int
    hnsw_m: int
    hnsw_ef_construction: int
    hnsw_ef: int
    metric_type: str = "COSINE"
    sparse_index_algo: str = "DAAT_MAXSCORE"
    max_content_length: int = 65535


def tenant_expr(tenant_id: str) -> str:
    escaped = tenant_id.replace("\\", "\\\\").replace('"', '\\"')
    return f'tenant_id == "{escaped}"'


class MilvusIndex:
    """Chunk index on a Milvus collection.

    Every search and delete carries a ``tenant_id`` filter expression, so the
    tenant scope is enforced by Milvus itself.
    """

    def __init__(self, config: MilvusConfig, dimension: int) -> None:
        try:
            from pymilvus import connections
        except ImportError as exc:
            raise MilvusDependencyError("pymilvus is required for MilvusIndex") from exc
        if dimension <= 0:
            raise EmbeddingConfigError(
                "Embedding dimension must be set before initializing MilvusIndex"
            )
        self.config = config
        self.dimension = dimension
        connections.connect(alias="default", uri=config.uri, token=config.token)
        self.ensure_collection()
        self.lexical = _LexicalAdapter(self)
        self.vector = _VectorAdapter(self)

    def ensure_collection(self) -> None:
        """Create collection schema and indexes when missing."""
        from pymilvus import (
            Collection,
            CollectionSchema,
            DataType,
            FieldSchema,
            Function,
            FunctionType,
            utility,
        )

        if utility.has_collection(self.config.collection):
            self.collection = Collection(
                self.config.collection, consistency_level=self.config.consistency
            )
            existing_dim = self._existing_embedding_dim()
            if existing_dim is not None and existing_dim != self.dimension:
                raise EmbeddingConfigError(
                    "Milvus collection embedding dimension mismatch: "
                    f"{existing_dim} (collection) vs {self.dimension} (embedder). "
                    "Update EMBEDDING_DIMENSION or use a new MILVUS_COLLECTION."
                )
            return

        fields = [
            FieldSchema(name="id", dtype=DataType.VARCHAR, is_primary=True, max_length=512),
            FieldSchema(name="tenant_id", dtype=DataType.VARCHAR, max_length=256),
            FieldSchema(name="document_id", dtype=DataType.VARCHAR, max_length=256),
            FieldSchema(name="document_name", dtype=DataType.VARCHAR, max_length=1024),
            FieldSchema(name="chunk_index", dtype=DataType.INT64),
            FieldSchema(name="page", dtype=DataType.INT64),
            FieldSchema(name="created_at", dtype=DataType.INT64),
            FieldSchema(
                name="content",
                dtype=DataType.VARCHAR,
                max_length=self.config.max_content_length,
                enable_analyzer=True,
            ),
            FieldSchema(name="embedding", dtype=DataType.FLOAT_VECTOR, dim=self.dimension),
            FieldSchema(name="text_sparse", dtype=DataType.SPARSE_FLOAT_VECTOR),
        ]
        functions = [
            Function(
                name="content_bm25",
                input_field_names=["content"],
                output_field_names=["text_sparse"],
                function_type=FunctionType.BM25,
            )
        ]
        schema = CollectionSchema(
            fields=fields,
            description="Tenant-scoped RAG chunks",
            functions=functions,
        )
        self.collection = Collection(
            self.config.collection,
            schema,
            consistency_level=self.config.consistency,
        )
        self._create_index()

    def _create_index(self) -> None:
        """Create dense, sparse and tenant scalar indexes."""
        if self.config.index_type.upper() == "HNSW":
            dense_params = {
                "index_type": "HNSW",
                "metric_type": self.config.metric_type,
                "params": {
                    "M": self.config.hnsw_m,
                    "efConstruction": self.config.hnsw_ef_construction,
                },
            }
        else:
            dense_params = {
                "index_type": self.config.index_type,
                "metric_type": self.config.metric_type,
                "params": {"nlist": self.config.nlist},
            }
        self.collection.create_index(field_name="embedding", index_params=dense_params)
        self.collection.create_index(
            field_name="text_sparse",
            index_params={
                "index_type": "SPARSE_INVERTED_INDEX",
                "metric_type": "BM25",
                "params": {"inverted_index_algo": self.config.sparse_index_algo},
            },
        )
        self.collection.create_index(field_name="tenant_id", index_name="tenant_id_idx")

    def _existing_embedding_dim(self) -> int | None:
        """Read embedding dimension from existing collection schema."""
        for field in self.collection.schema.fields:
            if field.name != "embedding":
                continue
            params = getattr(field, "params", None)
            dim = params.get("dim") if isinstance(params, dict) else None
            if dim is None:
                dim = getattr(field, "dim", None)
            try:
                return int(dim) if dim is not None else None
            except (TypeError, ValueError):
                return None
        return None

    def upsert(self, items: Iterable[IndexedChunk]) -> int:
        """Insert or replace chunk rows keyed by chunk id."""
        rows: list[dict[str, Any]] = []
        for item in check_item_dimensions(items, self.dimension):
            created = item.created_at or datetime.now(timezone.utc)
            rows.append(
                {
                    "id": item.id,
                    "tenant_id": item.tenant_id,
                    "document_id": item.document_id,
                    "document_name": item.document_name,
                    "chunk_index": item.chunk_index,
                    "page": item.page if item.page is not None else _NO_PAGE,
                    "created_at": int(created.timestamp()),
                    "content": item.content[: self.config.max_content_length],
                    "embedding": item.vector,
                }
            )
        if not rows:
            return 0
        try:
            self.collection.upsert(rows)
            self.collection.flush()
        except Exception as exc:
            raise SearchBackendError(f"Milvus upsert failed: {exc}") from exc
        return len(rows)

    def delete_document(self, tenant_id: str, document_id: str) -> int:
        escaped = document_id.replace('"', '\\"')
        expr = f'{tenant_expr(tenant_id)} and document_id == "{escaped}"'
        try:
            result = self.collection.delete(expr)
            self.collection.flush()
        except Exception as exc:
            raise SearchBackendError(f"Milvus delete failed: {exc}") from exc
        return int(getattr(result, "delete_count", 0) or 0)

    def search_lexical(self, tenant_id: str, query: str, limit: int) -> list[SearchResult]:
        validate_search_input(tenant_id, limit)
        cleaned = validate_query(query)
        return self._search(
            data=[cleaned],
            anns_field="text_sparse",
            param={"metric_type": "BM25"},
            tenant_id=tenant_id,
            limit=limit,
        )

    def search_vector(
        self, tenant_id: str, vector: list[float], limit: int
    ) -> list[SearchResult]:
        validate_search_input(tenant_id, limit)
        validate_query_vector(vector)
        if self.config.index_type.upper() == "HNSW":
            params = {"ef": max(self.config.hnsw_ef, limit)}
        else:
            params = {"nprobe": self.config.nprobe}
        return self._search(
            data=[vector],
            anns_field="embedding",
            param={"metric_type": self.config.metric_type, "params": params},
            tenant_id=tenant_id,
            limit=limit,
        )

    def _search(
        self,
        data: list[Any],
        anns_field: str,
        param: dict[str, Any],
        tenant_id: str,
        limit: int,
    ) -> list[SearchResult]:
        try:
            self.collection.load()
            results = self.collection.search(
                data=data,
                anns_field=anns_field,
                param=param,
                limit=limit,
                expr=tenant_expr(tenant_id),
                output_fields=_OUTPUT_FIELDS,
            )
        except Exception as exc:
            logger.error(
                "milvus_search_failed",
                extra={"field": anns_field, "tenant_id": tenant_id, "error": str(exc)},
            )
            raise SearchBackendError(f"Milvus search failed: {exc}") from exc

        hits: list[SearchResult] = []
        for hit in results[0]:
            entity = hit.entity
            if entity.get("tenant_id") != tenant_id:
                continue
            hits.append(_to_result(entity, float(hit.score)))
        hits.sort(key=lambda item: item.score, reverse=True)
        return hits

    def stats(self) -> dict[str, Any]:
        """Return collection stats."""
        try:
            count = int(self.collection.num_entities)
        except Exception:
            count = 0
        return {
            "backend": "milvus",
            "chunk_count": count,
            "embedding_dimension": self.dimension,
            "collection": self.config.collection,
        }

    def health(self) -> dict[str, Any]:
        """Return collection health info."""
        try:
            _ = self.collection.num_entities
        except Exception as exc:
            return {"backend": "milvus", "ok": False, "detail": str(exc)}
        return {"backend": "milvus", "ok": True, "collection": self.config.collection}


class _LexicalAdapter:
    def __init__(self, index: MilvusIndex) -> None:
        self._index = index

    async def search(self, tenant_id: str, query: str, limit: int) -> list[SearchResult]:
        return await asyncio.to_thread(self._index.search_lexical, tenant_id, query, limit)


class _VectorAdapter:
    def __init__(self, index: MilvusIndex) -> None:
        self._index = index

    async def search(
        self, tenant_id: str, vector: list[float], limit: int
    ) -> list[SearchResult]:
        return await asyncio.to_thread(self._index.search_vector, tenant_id, vector, limit)


def _to_result(entity: Any, score: float) -> SearchResult:
    page = entity.get("page")
    created = entity.get("created_at")
    timestamp = (
        datetime.fromtimestamp(int(created), tz=timezone.utc).isoformat() if created else None
    )
    return SearchResult(
        id=entity.get("id"),
        score=score,
        content=entity.get("content") or "",
        metadata=ChunkMetadata(
            document_id=entity.get("document_id") or "",
            document_name=entity.get("document_name") or "",
            chunk_index=int(entity.get("chunk_index") or 0),
            page=None if page is None or int(page) == _NO_PAGE else int(page),
            timestamp=timestamp,
        ),
    )
