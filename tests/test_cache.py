import asyncio
import threading

import pytest

from bidrecon.cache import (
    CacheEntry,
    CacheKey,
    ReconciliationCache,
    SQLiteReconciliationCache,
    content_digest,
    create_cache,
)
from bidrecon.errors import InputError


def _entry(label="x", digest=None):
    return CacheEntry(matches=[{"label": label}], analysis={"summary": {"summary": label}}, content_digest=digest)


class Counter:
    def __init__(self):
        self.calls = 0

    def __call__(self):
        self.calls += 1
        return _entry(str(self.calls))


def test_key_ignores_comparison_order():
    first = CacheKey.build("B1", ["B3", "B2"], "J", "bid_to_bid")
    second = CacheKey.build("B1", ("B2", "B3"), "J", "bid-to-bid")
    assert first == second
    assert hash(first) == hash(second)
    assert first.comparison_ids == ("B2", "B3")


def test_key_components_are_not_collapsed():
    # string concatenation would make these collide
    assert CacheKey.build("B1", ["2"], "J", "takeoff") != CacheKey.build("B", ["12"], "J", "takeoff")
    assert CacheKey.build("B1", ["B2"], "J", "takeoff") != CacheKey.build("B1", ["B2"], "J", "bid_to_bid")


def test_key_requires_subject_and_known_mode():
    with pytest.raises(InputError):
        CacheKey.build("", [], "J", "takeoff")
    with pytest.raises(InputError):
        CacheKey.build("B1", [], "J", "sideways")


def test_resolve_computes_once_without_refresh():
    cache = ReconciliationCache()
    key = CacheKey.build("B1", ["T1"], "J", "takeoff")
    compute = Counter()

    first = cache.resolve(key, False, compute)
    second = cache.resolve(key, False, compute)

    assert compute.calls == 1
    assert first.cached is False
    assert second.cached is True
    assert second.entry is first.entry


def test_resolve_with_force_refresh_computes_every_time():
    cache = ReconciliationCache()
    key = CacheKey.build("B1", ["T1"], "J", "takeoff")
    compute = Counter()

    for _ in range(3):
        result = cache.resolve(key, True, compute)
        assert result.cached is False

    assert compute.calls == 3
    assert cache.get(key).matches == [{"label": "3"}]


def test_put_overwrites_and_miss_returns_none():
    cache = ReconciliationCache()
    key = CacheKey.build("B1", [], "J", "takeoff")
    assert cache.get(key) is None
    cache.put(key, _entry("a"))
    cache.put(key, _entry("b"))
    assert cache.get(key).matches == [{"label": "b"}]


def test_invalidate_bid_removes_every_key_involving_it():
    cache = ReconciliationCache()
    as_subject = CacheKey.build("B1", ["B2"], "J", "bid_to_bid")
    as_comparison = CacheKey.build("B3", ["B1", "B2"], "J", "bid_to_bid")
    unrelated = CacheKey.build("B2", ["B3"], "J", "bid_to_bid")
    for key in (as_subject, as_comparison, unrelated):
        cache.put(key, _entry())

    assert cache.invalidate_bid("B1") == 2
    assert cache.keys() == [unrelated]
    assert cache.invalidate(unrelated) is True
    assert cache.invalidate(unrelated) is False


def test_hit_computed_from_other_inputs_is_flagged_stale():
    cache = ReconciliationCache()
    key = CacheKey.build("B1", ["T1"], "J", "takeoff")
    cache.put(key, _entry(digest=content_digest({"qty": 1})))

    fresh = cache.resolve(key, False, Counter(), digest=content_digest({"qty": 1}))
    stale = cache.resolve(key, False, Counter(), digest=content_digest({"qty": 2}))

    assert fresh.cached and not fresh.stale
    assert stale.cached and stale.stale


def test_concurrent_requests_for_one_key_are_coalesced():
    cache = ReconciliationCache()
    key = CacheKey.build("B1", ["T1"], "J", "takeoff")
    calls = []

    async def compute():
        calls.append(1)
        await asyncio.sleep(0.01)
        return _entry("shared")

    async def scenario():
        return await asyncio.gather(*(cache.resolve_async(key, False, compute) for _ in range(3)))

    results = asyncio.run(scenario())

    assert len(calls) == 1
    assert all(result.entry.matches == [{"label": "shared"}] for result in results)
    assert not cache.is_inflight(key)


def test_abandoned_request_still_populates_cache():
    cache = ReconciliationCache()
    key = CacheKey.build("B1", ["T1"], "J", "takeoff")

    async def scenario():
        started = asyncio.Event()
        release = asyncio.Event()

        async def compute():
            started.set()
            await release.wait()
            return _entry("late")

        caller = asyncio.ensure_future(cache.resolve_async(key, False, compute))
        await started.wait()
        caller.cancel()
        with pytest.raises(asyncio.CancelledError):
            await caller

        release.set()
        while cache.is_inflight(key):
            await asyncio.sleep(0.001)

    asyncio.run(scenario())

    assert cache.get(key).matches == [{"label": "late"}]


def test_computation_running_on_another_thread_is_joined():
    cache = ReconciliationCache()
    key = CacheKey.build("B1", ["T1"], "J", "takeoff")
    started = threading.Event()
    calls = []

    async def slow():
        calls.append("slow")
        started.set()
        await asyncio.sleep(0.2)
        return _entry("from-thread")

    async def never():
        raise AssertionError("the running computation must be joined")

    owner = threading.Thread(target=lambda: asyncio.run(cache.resolve_async(key, False, slow)))
    owner.start()
    assert started.wait(timeout=5)
    joined = asyncio.run(cache.resolve_async(key, True, never))
    owner.join(timeout=5)

    assert calls == ["slow"]
    assert joined.cached is False
    assert joined.entry.matches == [{"label": "from-thread"}]
    assert not cache.is_inflight(key)


def test_async_hit_does_not_call_compute():
    cache = ReconciliationCache()
    key = CacheKey.build("B1", ["T1"], "J", "takeoff")
    cache.put(key, _entry("stored"))

    async def compute():
        raise AssertionError("compute must not run on a hit")

    result = asyncio.run(cache.resolve_async(key, False, compute))
    assert result.cached is True


def test_sqlite_cache_persists_between_instances(tmp_path):
    path = tmp_path / "cache.sqlite"
    key = CacheKey.build("B1", ["T2", "T1"], "J", "takeoff")

    first = SQLiteReconciliationCache(path)
    first.put(key, _entry("persisted", digest="abc"))

    second = SQLiteReconciliationCache(path)
    entry = second.get(key)
    assert entry.matches == [{"label": "persisted"}]
    assert entry.content_digest == "abc"
    assert second.keys() == [key]


def test_sqlite_cache_invalidation(tmp_path):
    cache = SQLiteReconciliationCache(tmp_path / "cache.sqlite")
    key = CacheKey.build("B1", ["B2"], "J", "bid_to_bid")
    other = CacheKey.build("B4", ["B5"], "J", "bid_to_bid")
    cache.put(key, _entry())
    cache.put(other, _entry())

    assert cache.invalidate_bid("B2") == 1
    assert cache.get(key) is None
    cache.clear()
    assert cache.keys() == []


def test_sqlite_cache_resolve_uses_stored_entry(tmp_path):
    cache = SQLiteReconciliationCache(tmp_path / "cache.sqlite")
    key = CacheKey.build("B1", ["T1"], "J", "takeoff")
    compute = Counter()
    cache.resolve(key, False, compute)
    assert cache.resolve(key, False, compute).cached is True
    assert compute.calls == 1


def test_create_cache_falls_back_to_memory(tmp_path):
    assert type(create_cache("redis")) is ReconciliationCache
    assert isinstance(create_cache("sqlite", tmp_path / "c.sqlite"), SQLiteReconciliationCache)
