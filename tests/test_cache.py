import pytest

from vid_discover.cache import TTLCache


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def test_get_returns_stored_value():
    cache = TTLCache(max_size=10, ttl_seconds=60)
    cache.set("a", [1, 2])
    assert cache.get("a") == [1, 2]
    assert cache.get("missing") is None


def test_entries_expire_after_ttl():
    clock = FakeClock()
    cache = TTLCache(max_size=10, ttl_seconds=900, clock=clock)
    cache.set("a", "value")

    clock.now = 899
    assert cache.get("a") == "value"

    clock.now = 900
    assert cache.get("a") is None
    assert len(cache) == 0


def test_oldest_entry_evicted_on_overflow():
    cache = TTLCache(max_size=3, ttl_seconds=60)
    for key in ["a", "b", "c", "d"]:
        cache.set(key, key)

    assert len(cache) == 3
    assert cache.get("a") is None
    assert cache.get("d") == "d"


def test_reset_key_counts_as_new_insertion():
    cache = TTLCache(max_size=2, ttl_seconds=60)
    cache.set("a", 1)
    cache.set("b", 2)
    cache.set("a", 3)
    cache.set("c", 4)

    assert cache.get("b") is None
    assert cache.get("a") == 3


def test_purge_expired():
    clock = FakeClock()
    cache = TTLCache(max_size=10, ttl_seconds=10, clock=clock)
    cache.set("old", 1)
    clock.now = 5
    cache.set("new", 2)
    clock.now = 12

    assert cache.purge_expired() == 1
    assert cache.get("new") == 2


def test_hit_and_miss_counters():
    cache = TTLCache(max_size=10, ttl_seconds=60)
    cache.set("a", 1)
    cache.get("a")
    cache.get("b")
    assert cache.hits == 1
    assert cache.misses == 1


def test_invalid_size_rejected():
    with pytest.raises(ValueError):
        TTLCache(max_size=0, ttl_seconds=60)
