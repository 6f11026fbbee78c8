from __future__ import annotations

import pytest

from src.rag.ratelimit import RateLimiter, TTLCache, build_cache_key, normalize_query


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def test_bucket_allows_up_to_capacity_then_blocks() -> None:
    clock = FakeClock()
    limiter = RateLimiter(max_tokens=3, refill_rate=60, clock=clock)

    assert [limiter.check_limit("acme") for _ in range(4)] == [True, True, True, False]


def test_bucket_refills_with_elapsed_time() -> None:
    clock = FakeClock()
    limiter = RateLimiter(max_tokens=2, refill_rate=60, clock=clock)
    limiter.check_limit("acme")
    limiter.check_limit("acme")
    assert limiter.check_limit("acme") is False

    clock.advance(1.0)

    assert limiter.check_limit("acme") is True
    assert limiter.check_limit("acme") is False


def test_refill_never_exceeds_capacity() -> None:
    clock = FakeClock()
    limiter = RateLimiter(max_tokens=2, refill_rate=600, clock=clock)
    limiter.check_limit("acme")

    clock.advance(3600)
    limiter.check_limit("acme")

    assert limiter.get_token_count("acme") == pytest.approx(1.0)


def test_tenants_have_independent_buckets() -> None:
    limiter = RateLimiter(max_tokens=1, refill_rate=0, clock=FakeClock())

    assert limiter.check_limit("acme") is True
    assert limiter.check_limit("acme") is False
    assert limiter.check_limit("globex") is True


def test_reset_restores_full_bucket() -> None:
    limiter = RateLimiter(max_tokens=1, refill_rate=0, clock=FakeClock())
    limiter.check_limit("acme")
    limiter.check_limit("globex")

    limiter.reset("acme")
    assert limiter.get_token_count("acme") == 1.0
    assert limiter.check_limit("acme") is True

    limiter.reset_all()
    assert limiter.check_limit("globex") is True


def test_invalid_limiter_options() -> None:
    with pytest.raises(ValueError):
        RateLimiter(max_tokens=0)
    with pytest.raises(ValueError):
        RateLimiter(refill_rate=-1)


def test_cache_entries_expire() -> None:
    clock = FakeClock()
    cache: TTLCache[str] = TTLCache(default_ttl=10, clock=clock)
    cache.set("a", "alpha")
    cache.set("b", "beta", ttl=100)

    clock.advance(11)

    assert cache.get("a") is None
    assert cache.has("b") is True
    assert cache.size() == 1


def test_cache_cleanup_removes_only_expired() -> None:
    clock = FakeClock()
    cache: TTLCache[int] = TTLCache(default_ttl=5, clock=clock)
    cache.set("old", 1)
    clock.advance(3)
    cache.set("new", 2)
    clock.advance(3)

    assert cache.cleanup() == 1
    assert cache.get("new") == 2


def test_cache_evicts_oldest_insertion_when_full() -> None:
    cache: TTLCache[int] = TTLCache(max_size=2, clock=FakeClock())
    cache.set("first", 1)
    cache.set("second", 2)
    cache.set("first", 10)
    cache.set("third", 3)

    assert cache.get("first") is None
    assert cache.get("second") == 2
    assert cache.get("third") == 3


def test_cache_delete_and_clear() -> None:
    cache: TTLCache[int] = TTLCache(clock=FakeClock())
    cache.set("a", 1)
    cache.set("b", 2)

    cache.delete("a")
    assert cache.get("a") is None
    cache.clear()
    assert cache.size() == 0


def test_cache_key_normalizes_query() -> None:
    assert normalize_query("  Revenue\tGROWTH  2024 ") == "revenue growth 2024"
    assert build_cache_key("acme", "Revenue  Growth", 8) == "acme:revenue growth:8"
