# Copyright (c) 2025 Trae AI. All rights reserved.

from reelkeeper.core.cache import TTLCache


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_entries_expire_after_ttl():
    clock = FakeClock()
    cache = TTLCache(ttl=60, clock=clock)
    cache.set(("matrix", 1999, "Movie"), ["result"])

    clock.now += 59
    assert cache.get(("matrix", 1999, "Movie")) == ["result"]

    clock.now += 1
    assert cache.get(("matrix", 1999, "Movie")) is None
    assert len(cache) == 0


def test_empty_results_are_cached():
    cache = TTLCache(ttl=60, clock=FakeClock())
    cache.set("nothing", [])

    assert cache.get("nothing") == []
    assert "missing" not in cache


def test_cleanup_expired():
    clock = FakeClock()
    cache = TTLCache(ttl=10, clock=clock)
    cache.set("a", 1)
    cache.set("b", 2, ttl=100)

    clock.now += 20

    assert cache.cleanup_expired() == 1
    assert cache.get("b") == 2
