"""Tests for the embedding cache and the cached embedder."""

import pytest

from agent_memory.config import EmbeddingCacheConfig
from agent_memory.embedding import CachedEmbedder
from agent_memory.storage.embedding_cache import EmbeddingCache, make_cache_key

PROVIDER = "fake"
MODEL = "bow-4"
VECTOR = [0.5, 0.25, -1.0]


async def _cache(db, **config) -> EmbeddingCache:
    cache = EmbeddingCache(db, EmbeddingCacheConfig(**config))
    await cache.initialize()
    return cache


@pytest.mark.asyncio
async def test_get_returns_stored_vector(db):
    cache = await _cache(db)

    assert await cache.get("hello", PROVIDER, MODEL) is None
    await cache.set("hello", VECTOR, PROVIDER, MODEL)

    assert await cache.get("hello", PROVIDER, MODEL) == VECTOR
    assert await cache.has("hello", PROVIDER, MODEL)


@pytest.mark.asyncio
async def test_prune_keeps_most_recent_entries(db):
    cache = await _cache(db, max_entries=3, ttl_ms=0)

    for name in ("e1", "e2", "e3", "e4", "e5"):
        await cache.set(name, VECTOR, PROVIDER, MODEL)
    await cache.prune()

    assert not await cache.has("e1", PROVIDER, MODEL)
    assert not await cache.has("e2", PROVIDER, MODEL)
    for name in ("e3", "e4", "e5"):
        assert await cache.has(name, PROVIDER, MODEL)
    assert (await cache.get_stats()).total_entries == 3


@pytest.mark.asyncio
async def test_prune_trims_exactly_to_capacity(db):
    # Large headroom so nothing is pruned automatically
    cache = await _cache(db, max_entries=3, ttl_ms=0, prune_headroom=10.0)
    names = [f"text-{i}" for i in range(6)]
    for name in names:
        await cache.set(name, VECTOR, PROVIDER, MODEL)
    assert (await cache.get_stats()).total_entries == 6

    removed = await cache.prune()

    assert removed == 3
    assert (await cache.get_stats()).total_entries == 3
    survivors = [n for n in names if await cache.has(n, PROVIDER, MODEL)]
    assert survivors == names[3:]


@pytest.mark.asyncio
async def test_get_hit_refreshes_recency(db):
    cache = await _cache(db, max_entries=3, ttl_ms=0, prune_headroom=10.0)
    for name in ("e1", "e2", "e3", "e4"):
        await cache.set(name, VECTOR, PROVIDER, MODEL)

    await cache.get("e1", PROVIDER, MODEL)

    assert await cache.prune() == 1
    assert await cache.has("e1", PROVIDER, MODEL)
    assert not await cache.has("e2", PROVIDER, MODEL)


@pytest.mark.asyncio
async def test_insert_auto_prunes_past_headroom(db):
    cache = await _cache(db, max_entries=10, ttl_ms=0, prune_headroom=0.1)

    for i in range(11):
        await cache.set(f"t{i}", VECTOR, PROVIDER, MODEL)
    assert (await cache.get_stats()).total_entries == 11

    await cache.set("t11", VECTOR, PROVIDER, MODEL)
    assert (await cache.get_stats()).total_entries == 10
    assert not await cache.has("t0", PROVIDER, MODEL)


@pytest.mark.asyncio
async def test_expired_entries_are_invisible_before_prune(db, clock):
    cache = await _cache(db, ttl_ms=1000)
    await cache.set("old", VECTOR, PROVIDER, MODEL)

    clock.advance(seconds=2)
    await cache.set("fresh", VECTOR, PROVIDER, MODEL)

    assert await cache.get("old", PROVIDER, MODEL) is None
    assert not await cache.has("old", PROVIDER, MODEL)
    assert await cache.get_batch(["old", "fresh"], PROVIDER, MODEL) == {
        "fresh": VECTOR
    }
    assert (await cache.get_stats()).total_entries == 2

    assert await cache.prune() == 1
    assert (await cache.get_stats()).total_entries == 1


@pytest.mark.asyncio
async def test_zero_ttl_never_expires(db, clock):
    cache = await _cache(db, ttl_ms=0)
    await cache.set("forever", VECTOR, PROVIDER, MODEL)

    clock.advance(days=3650)

    assert await cache.get("forever", PROVIDER, MODEL) == VECTOR


@pytest.mark.asyncio
async def test_entries_are_partitioned_by_provider_and_model(db):
    cache = await _cache(db)
    await cache.set("hello", [0.5, 0.5], "p", "m1")
    await cache.set("hello", [0.25, 0.75], "p", "m2")

    assert await cache.get("hello", "p", "m1") == [0.5, 0.5]
    assert await cache.get("hello", "p", "m2") == [0.25, 0.75]
    assert await cache.get("hello", "other", "m1") is None
    assert make_cache_key("hello", "p", "m1") != make_cache_key("hello", "p", "m2")

    stats = await cache.get_stats()
    assert stats.total_entries == 2
    assert [(p.provider, p.model, p.count) for p in stats.providers] == [
        ("p", "m1", 1),
        ("p", "m2", 1),
    ]


@pytest.mark.asyncio
async def test_disabled_cache_never_stores(db):
    cache = await _cache(db, enabled=False)

    await cache.set("hello", VECTOR, PROVIDER, MODEL)
    await cache.set_batch({"a": VECTOR}, PROVIDER, MODEL)

    assert await cache.get("hello", PROVIDER, MODEL) is None
    assert not await cache.has("hello", PROVIDER, MODEL)
    assert await cache.get_batch(["hello", "a"], PROVIDER, MODEL) == {}
    assert await cache.prune() == 0
    assert (await cache.get_stats()).total_entries == 0


@pytest.mark.asyncio
async def test_batch_operations(db):
    cache = await _cache(db)
    await cache.set_batch({"a": [0.5], "b": [0.25]}, PROVIDER, MODEL)

    hits = await cache.get_batch(["a", "b", "c"], PROVIDER, MODEL)

    assert hits == {"a": [0.5], "b": [0.25]}


@pytest.mark.asyncio
async def test_delete_and_clear(db):
    cache = await _cache(db)
    await cache.set_batch({"a": [0.5], "b": [0.25]}, PROVIDER, MODEL)

    assert await cache.delete("a", PROVIDER, MODEL)
    assert not await cache.delete("a", PROVIDER, MODEL)
    assert await cache.clear() == 1
    assert (await cache.get_stats()).total_entries == 0


@pytest.mark.asyncio
async def test_stats_report_oldest_and_newest(db, clock):
    cache = await _cache(db, ttl_ms=0)
    first = clock()
    await cache.set("a", [0.5], PROVIDER, MODEL)
    clock.advance(minutes=5)
    await cache.set("b", [0.5], PROVIDER, MODEL)

    stats = await cache.get_stats()

    assert stats.oldest_entry == first
    assert stats.newest_entry == clock()


@pytest.mark.asyncio
async def test_cached_embedder_calls_provider_once_per_text(db, fake_provider):
    cache = await _cache(db)
    embedder = CachedEmbedder(fake_provider, cache)

    first = await embedder.embed("apple pie")
    second = await embedder.embed("apple pie")

    assert first == second == [1.0, 0.0, 0.0, 0.0]
    assert fake_provider.embed_calls == ["apple pie"]
    assert await cache.has("apple pie", fake_provider.provider, fake_provider.model)


@pytest.mark.asyncio
async def test_cached_embedder_batch_sends_only_misses(db, fake_provider):
    cache = await _cache(db)
    embedder = CachedEmbedder(fake_provider, cache)
    await embedder.embed("apple")

    vectors = await embedder.embed_batch(["apple", "dog", "car", "dog"])

    assert fake_provider.batch_calls == [["dog", "car"]]
    assert vectors == [
        [1.0, 0.0, 0.0, 0.0],
        [0.0, 0.0, 0.0, 1.0],
        [0.0, 0.0, 1.0, 0.0],
        [0.0, 0.0, 0.0, 1.0],
    ]


@pytest.mark.asyncio
async def test_cached_embedder_without_cache_always_calls_provider(fake_provider):
    embedder = CachedEmbedder(fake_provider)

    await embedder.embed("apple")
    await embedder.embed("apple")

    assert fake_provider.embed_calls == ["apple", "apple"]
