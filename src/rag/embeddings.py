from __future__ import annotations

"""Embedding providers, configuration validation and the batching gateway."""

import asyncio
import hashlib
import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx
from openai import APIConnectionError
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from src.app.metrics import EMBEDDING_RETRIES
from src.rag.ratelimit import TTLCache

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"[a-z0-9]+")

DEFAULT_BATCH_SIZE = 100
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY = 1.0


class EmbeddingError(RuntimeError):
    """Raised when embeddings fail or are invalid."""
    pass


class EmbeddingConfigError(RuntimeError):
    """Raised when embedding configuration is invalid."""
    pass


class EmbeddingProvider(Protocol):
    """Protocol for batch embedding providers."""
    dimension: int

    def embed(self, texts: list[str]) -> list[list[float]]:
        """Return one vector per text, in input order."""
        raise NotImplementedError


def validate_vector(vector: list[float], dimension: int) -> list[float]:
    """Validate and normalize embedding vectors."""
    if len(vector) != dimension:
        raise EmbeddingError(
            f"Embedding dimension mismatch: expected {dimension}, got {len(vector)}"
        )
    cleaned: list[float] = []
    for value in vector:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise EmbeddingError("Embedding contains a non-numeric value")
        if not math.isfinite(value):
            raise EmbeddingError("Embedding contains a non-finite value")
        cleaned.append(float(value))
    return cleaned


@dataclass
class HashEmbedder:
    """Deterministic hash-based embedder for testing or offline use."""
    dimension: int = 256

    def embed(self, texts: list[str]) -> list[list[float]]:
        return [self._embed_one(text) for text in texts]

    def _embed_one(self, text: str) -> list[float]:
        tokens = _TOKEN_RE.findall(text.lower())
        vector = [0.0] * self.dimension
        for token in tokens:
            digest = hashlib.sha256(token.encode("utf-8")).digest()
            vector[digest[0] % self.dimension] += 1.0
        norm = math.sqrt(sum(value * value for value in vector))
        if norm:
            vector = [value / norm for value in vector]
        return validate_vector(vector, self.dimension)


def resolve_openai_dimension(model: str) -> int | None:
    """Return expected dimension for OpenAI embedding model."""
    mapping = {
        "text-embedding-3-small": 1536,
        "text-embedding-3-large": 3072,
        "text-embedding-ada-002": 1536,
    }
    return mapping.get(model)


@dataclass(frozen=True)
class EmbeddingConfigReport:
    """Validation report for embedding configuration."""
    provider: str
    model: str | None
    configured_dimension: int
    expected_dimension: int | None
    ok: bool
    status: str
    detail: str | None = None
    action: str | None = None


def build_embedding_config_report(
    provider: str, model: str | None, dimension: int
) -> EmbeddingConfigReport:
    """Build a validation report for embedding settings."""
    normalized = provider.lower().strip() or "hash"
    if normalized == "google":
        normalized = "gemini"

    def report(ok: bool, status: str, expected: int | None = None, **extra: Any):
        return EmbeddingConfigReport(
            provider=normalized,
            model=model if normalized != "hash" else None,
            configured_dimension=dimension,
            expected_dimension=expected,
            ok=ok,
            status=status,
            **extra,
        )

    if normalized not in {"hash", "openai", "gemini"}:
        return report(
            False,
            "error",
            detail="Unsupported embedding provider.",
            action="Set EMBEDDING_PROVIDER to hash, openai, or gemini.",
        )
    if normalized == "hash":
        if dimension <= 0:
            return report(
                False,
                "error",
                detail="EMBEDDING_DIMENSION must be greater than zero for hash embeddings.",
                action="Set EMBEDDING_DIMENSION to a positive integer.",
            )
        return report(True, "ok", expected=dimension)

    env_model = "OPENAI_EMBEDDING_MODEL" if normalized == "openai" else "GEMINI_EMBEDDING_MODEL"
    if not model:
        return report(
            False,
            "error",
            detail=f"{env_model} is required for {normalized} embeddings.",
            action=f"Set {env_model} in .env.",
        )
    expected = resolve_openai_dimension(model) if normalized == "openai" else None
    if dimension <= 0:
        action = (
            f"Set EMBEDDING_DIMENSION to {expected}."
            if expected is not None
            else "Set EMBEDDING_DIMENSION based on the model documentation."
        )
        return report(
            False,
            "error",
            expected=expected,
            detail="EMBEDDING_DIMENSION must be set for the configured model.",
            action=action,
        )
    if expected is not None and dimension != expected:
        return report(
            False,
            "error",
            expected=expected,
            detail="EMBEDDING_DIMENSION does not match the model dimension.",
            action=f"Set EMBEDDING_DIMENSION to {expected}.",
        )
    if expected is None:
        return report(
            True,
            "warning",
            detail="Model dimension cannot be auto-validated. Confirm EMBEDDING_DIMENSION manually.",
        )
    return report(True, "ok", expected=expected)


@dataclass
class OpenAIEmbedder:
    """Embedding provider using OpenAI embeddings API."""
    api_key: str
    model: str
    dimension: int
    client: Any = field(init=False, repr=False)

    def __post_init__(self) -> None:
        if not self.api_key:
            raise EmbeddingConfigError("OPENAI_API_KEY is required for OpenAIEmbedder")
        if not self.model:
            raise EmbeddingConfigError("OPENAI_EMBEDDING_MODEL is required for OpenAIEmbedder")
        resolved = resolve_openai_dimension(self.model)
        if self.dimension <= 0:
            if resolved is None:
                raise EmbeddingConfigError(
                    "EMBEDDING_DIMENSION must be set for OpenAI embeddings when model is unknown"
                )
            self.dimension = resolved
        elif resolved is not None and self.dimension != resolved:
            raise EmbeddingConfigError(
                f"EMBEDDING_DIMENSION should be {resolved} for model {self.model}"
            )
        from openai import OpenAI

        self.client = OpenAI(api_key=self.api_key)

    def embed(self, texts: list[str]) -> list[list[float]]:
        """Embed a batch in a single API call."""
        response = self.client.embeddings.create(model=self.model, input=texts)
        items = sorted(response.data, key=lambda item: item.index)
        if len(items) != len(texts):
            raise EmbeddingError(
                f"OpenAI returned {len(items)} embeddings for {len(texts)} inputs"
            )
        return [validate_vector(list(item.embedding), self.dimension) for item in items]


@dataclass
class GeminiEmbedder:
    """Embedding provider using Gemini embeddings API."""
    api_key: str
    model: str
    dimension: int
    client: Any = field(init=False, repr=False)

    def __post_init__(self) -> None:
        if not self.api_key:
            raise EmbeddingConfigError("GEMINI_API_KEY is required for GeminiEmbedder")
        if not self.model:
            raise EmbeddingConfigError("GEMINI_EMBEDDING_MODEL is required for GeminiEmbedder")
        import google.generativeai as genai

        genai.configure(api_key=self.api_key)
        self.client = genai

    def embed(self, texts: list[str]) -> list[list[float]]:
        result = self.client.embed_content(model=self.model, content=texts)
        embedding = result.get("embedding") if isinstance(result, dict) else None
        if embedding is None:
            embedding = getattr(result, "embedding", None)
        if embedding is None:
            raise EmbeddingError("Gemini embedding response missing embedding vector")
        # a single input comes back as a flat vector
        if embedding and not isinstance(embedding[0], (list, tuple)):
            embedding = [embedding]
        if len(embedding) != len(texts):
            raise EmbeddingError(
                f"Gemini returned {len(embedding)} embeddings for {len(texts)} inputs"
            )
        return [validate_vector(list(vector), self.dimension) for vector in embedding]


@dataclass
class EmbeddingGateway:
    """Batches provider calls and retries transient failures with exponential backoff.

    A batch is attempted ``1 + max_retries`` times, sleeping
    ``base_delay * 2 ** attempt`` seconds between attempts. Only failures accepted by
    ``is_transient_error`` are retried. Exhaustion raises ``EmbeddingError`` and no
    partial result is returned.
    """
    provider: EmbeddingProvider
    batch_size: int = DEFAULT_BATCH_SIZE
    max_retries: int = DEFAULT_MAX_RETRIES
    base_delay: float = DEFAULT_RETRY_DELAY
    timeout: float | None = None
    cache: TTLCache[list[float]] | None = None

    def __post_init__(self) -> None:
        if self.batch_size <= 0:
            raise EmbeddingConfigError("batch_size must be positive")
        if self.max_retries < 0:
            raise EmbeddingConfigError("max_retries must be non-negative")

    @property
    def dimension(self) -> int:
        return self.provider.dimension

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        vectors: list[list[float]] = []
        for start in range(0, len(texts), self.batch_size):
            batch = texts[start : start + self.batch_size]
            vectors.extend(await self._embed_with_retry(batch))
        return vectors

    async def embed_query(self, text: str, tenant_id: str = "") -> list[float]:
        # exact text: provider vectors are case and whitespace sensitive
        key = f"{tenant_id}:embedding:{self.dimension}:{text}"
        if self.cache is not None:
            cached = self.cache.get(key)
            if cached is not None:
                return cached
        vectors = await self.embed_batch([text])
        if not vectors:
            raise EmbeddingError("Embedding provider returned no vector for query")
        if self.cache is not None:
            self.cache.set(key, vectors[0])
        return vectors[0]

    async def _embed_with_retry(self, batch: list[str]) -> list[list[float]]:
        attempts = self.max_retries + 1
        retrying = AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=wait_exponential(multiplier=self.base_delay),
            retry=retry_if_exception(is_transient_error),
            before_sleep=_log_retry,
            sleep=_sleep,
        )
        try:
            return await retrying(self._call_provider, batch)
        except RetryError as exc:
            logger.error(
                "embedding_failed",
                extra={"attempts": attempts, "batch_size": len(batch)},
            )
            raise EmbeddingError(
                f"Embedding failed after {attempts} attempts"
            ) from exc.last_attempt.exception()
        except (EmbeddingError, EmbeddingConfigError):
            raise
        except Exception as exc:
            logger.error(
                "embedding_failed",
                extra={"attempts": 1, "batch_size": len(batch), "error": type(exc).__name__},
            )
            raise EmbeddingError(f"Embedding provider error: {type(exc).__name__}") from exc

    async def _call_provider(self, batch: list[str]) -> list[list[float]]:
        call = asyncio.to_thread(self.provider.embed, batch)
        if self.timeout is not None:
            vectors = await asyncio.wait_for(call, timeout=self.timeout)
        else:
            vectors = await call
        if len(vectors) != len(batch):
            raise EmbeddingError(
                f"Provider returned {len(vectors)} embeddings for {len(batch)} inputs"
            )
        return [validate_vector(list(vector), self.dimension) for vector in vectors]


def _transient_status(status: int) -> bool:
    return status == 429 or 500 <= status < 600


def is_transient_error(exc: BaseException) -> bool:
    """Timeouts, dropped connections, 429 and 5xx are retried; anything else fails at once."""
    if isinstance(exc, (EmbeddingError, EmbeddingConfigError)):
        return False
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return True
    if isinstance(exc, (httpx.TransportError, APIConnectionError)):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return _transient_status(exc.response.status_code)
    # openai APIStatusError carries status_code, google api_core errors carry code
    for attr in ("status_code", "code"):
        status = getattr(exc, attr, None)
        if isinstance(status, int) and not isinstance(status, bool):
            return _transient_status(status)
    return False


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "embedding_retry",
        extra={
            "attempt": retry_state.attempt_number,
            "delay_s": retry_state.next_action.sleep if retry_state.next_action else 0.0,
            "error": type(exc).__name__,
        },
    )
    EMBEDDING_RETRIES.inc()


async def _sleep(seconds: float) -> None:
    await asyncio.sleep(seconds)


def build_provider(
    provider: str,
    dimension: int,
    openai_api_key: str | None = None,
    openai_model: str | None = None,
    gemini_api_key: str | None = None,
    gemini_model: str | None = None,
) -> EmbeddingProvider:
    """Instantiate the configured embedding provider."""
    normalized = provider.lower().strip()
    if normalized in {"", "hash"}:
        return HashEmbedder(dimension=dimension)
    if normalized == "openai":
        return OpenAIEmbedder(
            api_key=openai_api_key or "", model=openai_model or "", dimension=dimension
        )
    if normalized in {"gemini", "google"}:
        return GeminiEmbedder(
            api_key=gemini_api_key or "", model=gemini_model or "", dimension=dimension
        )
    raise EmbeddingConfigError(f"Unsupported embedding provider: {provider}")
