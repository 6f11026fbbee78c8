from __future__ import annotations

"""Per-tenant token-bucket rate limiting and a TTL cache for external calls."""

import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Generic, TypeVar

from src.loaders.chunking import normalize_text

T = TypeVar("T")

Clock = Callable[[], float]


class RateLimitExceeded(RuntimeError):
    """Raised when a tenant has no request tokens left."""

    def __init__(self, tenant_id: str) -> None:
        super().__init__(f"Rate limit exceeded for tenant {tenant_id}")
        self.tenant_id = tenant_id


@dataclass
class _Bucket:
    tokens: float
    last_refill: float
    lock: threading.Lock


class RateLimiter:
    """Token bucket per tenant, refilled from elapsed time on every check.

    ``refill_rate`` is expressed in tokens per minute.
    """

    def __init__(
        self,
        max_tokens: int = 100,
        refill_rate: float = 100.0,
        clock: Clock = time.monotonic,
    ) -> None:
        if max_tokens <= 0:
            raise ValueError("max_tokens must be positive")
        if refill_rate < 0:
            raise ValueError("refill_rate must be non-negative")
        self.max_tokens = max_tokens
        self.refill_rate = refill_rate
        self._clock = clock
        self._buckets: dict[str, _Bucket] = {}
        self._registry_lock = threading.Lock()

    def _bucket(self, tenant_id: str) -> _Bucket:
        bucket = self._buckets.get(tenant_id)
        if bucket is not None:
            return bucket
        with self._registry_lock:
            bucket = self._buckets.get(tenant_id)
            if bucket is None:
                bucket = _Bucket(
                    tokens=float(self.max_tokens),
                    last_refill=self._clock(),
                    lock=threading.Lock(),
                )
                self._buckets[tenant_id] = bucket
        return bucket

    def check_limit(self, tenant_id: str) -> bool:
        """Consume one token for the tenant; return False when rate limited."""
        bucket = self._bucket(tenant_id)
        with bucket.lock:
            now = self._clock()
            elapsed_minutes = max(0.0, now - bucket.last_refill) / 60.0
            bucket.tokens = min(
                float(self.max_tokens), bucket.tokens + elapsed_minutes * self.refill_rate
            )
            bucket.last_refill = now
            if bucket.tokens >= 1.0:
                bucket.tokens -= 1.0
                return True
            return False

    def get_token_count(self, tenant_id: str) -> float:
        bucket = self._buckets.get(tenant_id)
        if bucket is None:
            return float(self.max_tokens)
        return bucket.tokens

    def reset(self, tenant_id: str) -> None:
        with self._registry_lock:
            self._buckets.pop(tenant_id, None)

    def reset_all(self) -> None:
        with self._registry_lock:
            self._buckets.clear()


@dataclass
class _CacheEntry(Generic[T]):
    value: T
    expires_at: float


class TTLCache(Generic[T]):
    """In-memory cache with per-entry TTL and oldest-insertion eviction.

    Expired entries are only removed when read or on ``cleanup``.
    """

    def __init__(
        self,
        default_ttl: float = 300.0,
        max_size: int = 1000,
        clock: Clock = time.monotonic,
    ) -> None:
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self.default_ttl = default_ttl
        self.max_size = max_size
        self._clock = clock
        self._entries: OrderedDict[str, _CacheEntry[T]] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str) -> T | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._clock() > entry.expires_at:
                del self._entries[key]
                return None
            return entry.value

    def set(self, key: str, value: T, ttl: float | None = None) -> None:
        with self._lock:
            if key not in self._entries and len(self._entries) >= self.max_size:
                self._entries.popitem(last=False)
            expires_at = self._clock() + (self.default_ttl if ttl is None else ttl)
            self._entries[key] = _CacheEntry(value=value, expires_at=expires_at)

    def has(self, key: str) -> bool:
        return self.get(key) is not None

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def size(self) -> int:
        return len(self._entries)

    def cleanup(self) -> int:
        """Drop expired entries and return how many were removed."""
        with self._lock:
            now = self._clock()
            expired = [key for key, entry in self._entries.items() if now > entry.expires_at]
            for key in expired:
                del self._entries[key]
            return len(expired)


def normalize_query(query: str) -> str:
    """Lowercase, trim and collapse whitespace for cache keys."""
    return normalize_text(query).lower()


def build_cache_key(tenant_id: str, query: str, n: int) -> str:
    return f"{tenant_id}:{normalize_query(query)}:{n}"
