from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


def _parse_float_map(raw: str) -> dict[str, float]:
    """Parse ``key=value,key=value`` pairs, skipping malformed entries."""
    mapping: dict[str, float] = {}
    for part in raw.split(","):
        part = part.strip()
        if not part or "=" not in part:
            continue
        key, value = part.split("=", 1)
        key = key.strip().lower()
        value = value.strip()
        if not key or not value:
            continue
        try:
            mapping[key] = float(value)
        except ValueError:
            continue
    return mapping


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes"}


@dataclass(frozen=True)
class Settings:
    chunk_size: int = int(os.getenv("RAG_CHUNK_SIZE", "800"))
    chunk_overlap: int = int(os.getenv("RAG_CHUNK_OVERLAP", "160"))
    chunk_word_break_ratio: float = float(os.getenv("RAG_CHUNK_WORD_BREAK_RATIO", "0.5"))
    embedding_provider: str = os.getenv("EMBEDDING_PROVIDER", "hash")
    embedding_dimension: int = int(os.getenv("EMBEDDING_DIMENSION", "256"))
    embedding_batch_size: int = int(os.getenv("RAG_EMBEDDING_BATCH_SIZE", "100"))
    embedding_max_retries: int = int(os.getenv("RAG_EMBEDDING_MAX_RETRIES", "3"))
    embedding_retry_delay: float = float(os.getenv("RAG_EMBEDDING_RETRY_DELAY", "1.0"))
    embedding_timeout: float = float(os.getenv("RAG_EMBEDDING_TIMEOUT", "30"))
    openai_api_key: str | None = os.getenv("OPENAI_API_KEY")
    openai_embedding_model: str | None = os.getenv("OPENAI_EMBEDDING_MODEL")
    openai_base_url: str = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1")
    openai_chat_model: str = os.getenv("OPENAI_CHAT_MODEL", "gpt-4o-mini")
    gemini_api_key: str | None = os.getenv("GEMINI_API_KEY")
    gemini_embedding_model: str | None = os.getenv("GEMINI_EMBEDDING_MODEL")
    vectorstore_backend: str = os.getenv("RAG_VECTORSTORE", "memory")
    milvus_uri: str = os.getenv("MILVUS_URI", "http://localhost:19530")
    milvus_token: str | None = os.getenv("MILVUS_TOKEN")
    milvus_collection: str = os.getenv("MILVUS_COLLECTION", "tenant_chunks")
    milvus_consistency: str = os.getenv("MILVUS_CONSISTENCY", "Strong")
    milvus_index_type: str = os.getenv("MILVUS_INDEX_TYPE", "HNSW")
    milvus_nlist: int = int(os.getenv("MILVUS_NLIST", "1024"))
    milvus_nprobe: int = int(os.getenv("MILVUS_NPROBE", "10"))
    milvus_hnsw_m: int = int(os.getenv("MILVUS_HNSW_M", "16"))
    milvus_hnsw_ef_construction: int = int(os.getenv("MILVUS_HNSW_EF_CONSTRUCTION", "200"))
    milvus_hnsw_ef: int = int(os.getenv("MILVUS_HNSW_EF", "64"))
    search_timeout: float = float(os.getenv("RAG_SEARCH_TIMEOUT", "15"))
    fusion_method: str = os.getenv("RAG_FUSION_METHOD", "rrf")
    rrf_k: int = int(os.getenv("RAG_RRF_K", "60"))
    fusion_weights_raw: str = os.getenv("RAG_FUSION_WEIGHTS", "lexical=0.3,vector=0.7")
    score_threshold: float = float(os.getenv("RAG_SCORE_THRESHOLD", "0.01"))
    top_k: int = int(os.getenv("RAG_TOP_K", "8"))
    lexical_limit: int = int(os.getenv("RAG_LEXICAL_LIMIT", "50"))
    vector_limit: int = int(os.getenv("RAG_VECTOR_LIMIT", "50"))
    context_max_tokens: int = int(os.getenv("RAG_CONTEXT_MAX_TOKENS", "4000"))
    context_reserve_tokens: int = int(os.getenv("RAG_CONTEXT_RESERVE_TOKENS", "100"))
    snippet_max_chars: int = int(os.getenv("RAG_SNIPPET_MAX_CHARS", "500"))
    rate_limit_max_tokens: int = int(os.getenv("RAG_RATE_LIMIT_MAX_TOKENS", "100"))
    rate_limit_refill_per_min: float = float(os.getenv("RAG_RATE_LIMIT_REFILL_PER_MIN", "100"))
    cache_ttl: float = float(os.getenv("RAG_CACHE_TTL", "300"))
    cache_max_size: int = int(os.getenv("RAG_CACHE_MAX_SIZE", "1000"))
    metadata_db_uri_raw: str = os.getenv("RAG_METADATA_DB_URI", "")
    object_store_endpoint_url: str | None = os.getenv("RAG_OBJECT_STORE_ENDPOINT_URL")
    object_store_region: str | None = os.getenv("RAG_OBJECT_STORE_REGION")
    object_store_access_key: str | None = os.getenv("RAG_OBJECT_STORE_ACCESS_KEY")
    object_store_secret_key: str | None = os.getenv("RAG_OBJECT_STORE_SECRET_KEY")
    object_store_bucket: str | None = os.getenv("RAG_OBJECT_STORE_BUCKET")
    file_max_bytes: int = int(os.getenv("RAG_FILE_MAX_BYTES", "20971520"))
    llm_provider: str = os.getenv("RAG_LLM_PROVIDER", "extractive")
    llm_max_tokens: int = int(os.getenv("RAG_LLM_MAX_TOKENS", "1024"))
    llm_temperature: float = float(os.getenv("RAG_LLM_TEMPERATURE", "0.1"))
    llm_timeout: float = float(os.getenv("RAG_LLM_TIMEOUT", "60"))
    metrics_enabled: bool = _flag("RAG_METRICS_ENABLED", "true")
    log_level: str = os.getenv("RAG_LOG_LEVEL", "INFO")

    @property
    def fusion_weights(self) -> dict[str, float]:
        raw = os.getenv("RAG_FUSION_WEIGHTS", self.fusion_weights_raw).strip()
        weights = {"lexical": 0.3, "vector": 0.7}
        weights.update(_parse_float_map(raw))
        return weights

    @property
    def metadata_db_uri(self) -> str:
        raw = os.getenv("RAG_METADATA_DB_URI", self.metadata_db_uri_raw).strip()
        return raw or "sqlite://"

    @property
    def policy_require_sources(self) -> bool:
        return _flag("POLICY_REQUIRE_SOURCES", "true")

    @property
    def policy_block_pii(self) -> bool:
        return _flag("POLICY_BLOCK_PII_IN_OUTPUT", "true")

    @property
    def policy_strict_numbers(self) -> bool:
        return _flag("POLICY_STRICT_NUMBERS", "true")

    @property
    def policy_recent_months(self) -> int:
        return int(os.getenv("POLICY_RECENT_MONTHS", "9"))


settings = Settings()
