from __future__ import annotations

from functools import lru_cache

from src.app.settings import settings
from src.loaders.object_store import ObjectStore, ObjectStoreConfig
from src.metadata.store import MetadataStore
from src.rag.embeddings import (
    EmbeddingConfigReport,
    EmbeddingGateway,
    EmbeddingProvider,
    build_embedding_config_report,
    build_provider,
)
from src.rag.fusion import FusionConfig
from src.rag.guardrails import OutputPolicy
from src.rag.llm import CompletionProvider, build_completion_provider
from src.rag.pipeline import RetrievalPipeline
from src.rag.ratelimit import RateLimiter, TTLCache
from src.vectorstore.inmemory import InMemoryIndex
from src.vectorstore.milvus import MilvusConfig, MilvusIndex


@lru_cache
def get_pipeline() -> RetrievalPipeline:
    gateway = get_embedding_gateway()
    index = get_index()
    weights = settings.fusion_weights
    fusion = FusionConfig(
        method=settings.fusion_method.lower().strip(),
        k=settings.rrf_k,
        lexical_weight=weights["lexical"],
        vector_weight=weights["vector"],
        score_threshold=settings.score_threshold,
        top_k=settings.top_k,
    )
    return RetrievalPipeline(
        embeddings=gateway,
        lexical=index.lexical,
        vector=index.vector,
        index=index,
        fusion=fusion,
        chunk_size=settings.chunk_size,
        chunk_overlap=settings.chunk_overlap,
        word_break_ratio=settings.chunk_word_break_ratio,
        context_max_tokens=settings.context_max_tokens,
        reserve_tokens=settings.context_reserve_tokens,
        lexical_limit=settings.lexical_limit,
        vector_limit=settings.vector_limit,
        rate_limiter=get_rate_limiter(),
        search_timeout=settings.search_timeout,
    )


def reset_pipeline_cache() -> None:
    get_pipeline.cache_clear()
    get_index.cache_clear()
    get_embedding_gateway.cache_clear()
    get_rate_limiter.cache_clear()
    get_query_cache.cache_clear()
    get_metadata_store.cache_clear()
    get_object_store.cache_clear()
    get_completion_provider.cache_clear()


@lru_cache
def get_rate_limiter() -> RateLimiter:
    return RateLimiter(
        max_tokens=settings.rate_limit_max_tokens,
        refill_rate=settings.rate_limit_refill_per_min,
    )


@lru_cache
def get_query_cache() -> TTLCache[list[float]]:
    return TTLCache(default_ttl=settings.cache_ttl, max_size=settings.cache_max_size)


@lru_cache
def get_embedding_gateway() -> EmbeddingGateway:
    return EmbeddingGateway(
        provider=build_embedder(),
        batch_size=settings.embedding_batch_size,
        max_retries=settings.embedding_max_retries,
        base_delay=settings.embedding_retry_delay,
        timeout=settings.embedding_timeout,
        cache=get_query_cache(),
    )


@lru_cache
def get_index() -> InMemoryIndex | MilvusIndex:
    return build_index(get_embedding_gateway().dimension)


@lru_cache
def get_metadata_store() -> MetadataStore:
    return MetadataStore(settings.metadata_db_uri)


@lru_cache
def get_object_store() -> ObjectStore | None:
    if not settings.object_store_bucket:
        return None
    return ObjectStore(
        ObjectStoreConfig(
            bucket=settings.object_store_bucket,
            endpoint_url=settings.object_store_endpoint_url,
            region=settings.object_store_region,
            access_key=settings.object_store_access_key,
            secret_key=settings.object_store_secret_key,
        )
    )


@lru_cache
def get_completion_provider() -> CompletionProvider:
    return build_completion_provider(
        provider=settings.llm_provider,
        api_key=settings.openai_api_key,
        base_url=settings.openai_base_url,
        model=settings.openai_chat_model,
        temperature=settings.llm_temperature,
        timeout=settings.llm_timeout,
    )


def get_output_policy(required_sections: list[str] | None = None) -> OutputPolicy:
    return OutputPolicy(
        require_sources=settings.policy_require_sources,
        block_pii=settings.policy_block_pii,
        strict_numbers=settings.policy_strict_numbers,
        recent_months=settings.policy_recent_months,
        required_sections=tuple(required_sections or ()),
    )


def get_embedding_config_report() -> EmbeddingConfigReport:
    provider = settings.embedding_provider
    model = None
    if provider.lower().strip() == "openai":
        model = settings.openai_embedding_model
    elif provider.lower().strip() in {"gemini", "google"}:
        model = settings.gemini_embedding_model
    return build_embedding_config_report(provider, model, settings.embedding_dimension)


def build_embedder() -> EmbeddingProvider:
    return build_provider(
        settings.embedding_provider,
        settings.embedding_dimension,
        openai_api_key=settings.openai_api_key,
        openai_model=settings.openai_embedding_model,
        gemini_api_key=settings.gemini_api_key,
        gemini_model=settings.gemini_embedding_model,
    )


def build_index(dimension: int, collection: str | None = None) -> InMemoryIndex | MilvusIndex:
    backend = settings.vectorstore_backend.lower().strip()
    if backend == "milvus":
        config = MilvusConfig(
            uri=settings.milvus_uri,
            token=settings.milvus_token,
            collection=collection or settings.milvus_collection,
            consistency=settings.milvus_consistency,
            index_type=settings.milvus_index_type,
            nlist=settings.milvus_nlist,
            nprobe=settings.milvus_nprobe,
            hnsw_m=settings.milvus_hnsw_m,
            hnsw_ef_construction=settings.milvus_hnsw_ef_construction,
            hnsw_ef=settings.milvus_hnsw_ef,
        )
        return MilvusIndex(config=config, dimension=dimension)
    return InMemoryIndex(dimension=dimension)
