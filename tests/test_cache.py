from radar.core.cache import TTLCache
from tests.fakes import FakeClock


def test_entries_expire_after_ttl(clock: FakeClock) -> None:
    cache: TTLCache[str, int] = TTLCache(ttl_seconds=30, clock=clock.monotonic)
    cache.set("acme", 1)
    clock.advance(29)
    assert cache.get("acme") == 1
    clock.advance(1)
    assert cache.get("acme") is None
    assert "acme" not in cache


def test_non_positive_ttl_is_not_stored(clock: FakeClock) -> None:
    cache: TTLCache[str, int] = TTLCache(ttl_seconds=30, clock=clock.monotonic)
    cache.set("acme", 1, ttl_seconds=0)
    assert len(cache) == 0


def test_full_cache_evicts_entry_closest_to_expiry(clock: FakeClock) -> None:
    cache: TTLCache[str, int] = TTLCache(ttl_seconds=100, max_entries=2, clock=clock.monotonic)
    cache.set("a", 1, ttl_seconds=10)
    cache.set("b", 2)
    cache.set("c", 3)
    assert cache.get("a") is None
    assert cache.get("b") == 2
    assert cache.get("c") == 3


def test_sweep_removes_expired(clock: FakeClock) -> None:
    cache: TTLCache[str, int] = TTLCache(ttl_seconds=10, clock=clock.monotonic)
    cache.set("a", 1)
    cache.set("b", 2, ttl_seconds=50)
    clock.advance(20)
    assert cache.sweep() == 1
    assert cache.values() == [2]
