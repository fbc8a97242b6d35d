import pytest

from storefront.cache import CacheEntry, GenerationCache


def test_entry_survives_until_ttl_and_expires_after(clock):
    cache = GenerationCache(ttl_seconds=3600, max_entries=10, clock=clock)
    cache.put("k", "https://cdn/a.webp", "scene")
    clock.advance(3600 - 0.001)
    assert cache.get("k").artifact == "https://cdn/a.webp"
    clock.advance(0.002)
    assert cache.get("k") is None
    assert len(cache) == 0


def test_size_never_exceeds_bound_and_keeps_newest(clock):
    cache = GenerationCache(ttl_seconds=3600, max_entries=10, clock=clock)
    for i in range(11):
        cache.put(f"k{i}", f"url{i}")
        clock.advance(1)
        assert len(cache) <= 10
    # one eviction batch (10% of 10) drops only the oldest entry
    assert cache.get("k0") is None
    for i in range(1, 11):
        assert cache.get(f"k{i}") is not None


def test_eviction_removes_a_batch(clock):
    cache = GenerationCache(ttl_seconds=3600, max_entries=100, clock=clock)
    for i in range(101):
        cache.put(f"k{i}", "u")
        clock.advance(1)
    assert len(cache) == 91
    assert cache.get("k9") is None
    assert cache.get("k10") is not None


def test_set_replaces_whole_entry(clock):
    cache = GenerationCache(clock=clock)
    cache.put("k", "first", "scene-1")
    clock.advance(5)
    cache.put("k", "second", "scene-2")
    entry = cache.get("k")
    assert entry == CacheEntry(artifact="second", generator_input="scene-2", created_at=clock.now)


def test_stats(clock):
    cache = GenerationCache(clock=clock)
    assert cache.stats() == {"size": 0, "oldestEntryTimestamp": None}
    cache.put("a", "1")
    clock.advance(10)
    cache.put("b", "2")
    assert cache.stats() == {"size": 2, "oldestEntryTimestamp": clock.now - 10}


def test_invalid_bound():
    with pytest.raises(ValueError):
        GenerationCache(max_entries=0)
