"""Tests for facet_core.caching (tiers, shared stores, hierarchy)."""

import asyncio
import threading
import time

import pytest
from unittest.mock import AsyncMock, MagicMock

from facet_core.caching import (
    CacheContext,
    CacheEntry,
    CacheHierarchy,
    CacheStrategy,
    CacheTier,
    InMemorySharedStore,
    LocalTier,
    RedisSharedStore,
    WarmingItem,
    build_key,
)
from facet_core.caching.tiers import Prediction, PredictiveTier, SharedTier
from facet_core.config import Settings


class StallingStore:
    """Shared store whose calls never come back in time."""

    async def get(self, key):
        await asyncio.sleep(3)

    async def set_with_ttl(self, key, value, ttl_seconds):
        await asyncio.sleep(3)

    async def delete(self, pattern):
        await asyncio.sleep(3)


class FakeClock:
    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemorySharedStore()


@pytest.fixture
def cache(store, clock):
    return CacheHierarchy(Settings(), shared_store=store, clock=clock)


def _ctx(task_id="emotion_analyzer", confidence=0.75, **kwargs):
    return CacheContext(user_id="user-1", task_id=task_id, confidence=confidence, **kwargs)


def _entry(key, now=1_000_000.0, ttl=600, **kwargs):
    return CacheEntry(key=key, value={"v": key}, created_at=now, expires_at=now + ttl, tier=CacheTier.LOCAL, **kwargs)


# ========================================================================
# TIERS
# ========================================================================


class TestLocalTier:
    def test_get_set(self):
        tier = LocalTier(10)
        tier.set(_entry("a"))
        assert tier.get("a", 1_000_000.0).value == {"v": "a"}

    def test_expired_entry_is_dropped(self):
        tier = LocalTier(10)
        tier.set(_entry("a", ttl=5))
        assert tier.get("a", 1_000_010.0) is None
        assert len(tier) == 0

    def test_evicts_oldest_fifth_when_full(self):
        tier = LocalTier(10)
        for i in range(10):
            tier.set(_entry(f"k{i}"))
        tier.get("k0", 1_000_000.0)  # k0 becomes most recently used
        tier.set(_entry("new"))
        assert tier.evictions == 2
        assert len(tier) == 9
        assert tier.get("k0", 1_000_000.0) is not None
        assert tier.get("k1", 1_000_000.0) is None
        assert tier.get("k2", 1_000_000.0) is None

    def test_capacity_never_exceeded_under_threads(self):
        tier = LocalTier(50)

        def writer(n):
            for i in range(200):
                tier.set(_entry(f"{n}-{i}"))

        threads = [threading.Thread(target=writer, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(tier) <= 50

    def test_delete_prefix(self):
        tier = LocalTier(10)
        tier.set(_entry("u1:a"))
        tier.set(_entry("u1:b"))
        tier.set(_entry("u2:a"))
        assert tier.delete_prefix("u1:") == 2
        assert len(tier) == 1


class TestSharedTier:
    async def test_round_trip(self, store):
        tier = SharedTier(store)
        entry = _entry("k", confidence=0.9, task_id="memory_manager")
        assert await tier.set(entry, 600) is True
        loaded = await tier.get("k", 1_000_000.0)
        assert loaded.value == {"v": "k"}
        assert loaded.tier == CacheTier.SHARED
        assert loaded.confidence == 0.9

    async def test_store_failure_is_a_miss(self):
        failing = MagicMock()
        failing.get = AsyncMock(side_effect=ConnectionError("down"))
        tier = SharedTier(failing)
        assert await tier.get("k", 0.0) is None
        assert tier.errors == 1

    async def test_breaker_opens_after_repeated_failures(self):
        failing = MagicMock()
        failing.get = AsyncMock(side_effect=ConnectionError("down"))
        tier = SharedTier(failing)
        for _ in range(10):
            await tier.get("k", 0.0)
        # 5 failures open the breaker; the rest never reach the store
        assert failing.get.await_count == 5

    async def test_stalled_store_is_a_miss(self):
        stalled = StallingStore()
        tier = SharedTier(stalled, timeout_sec=0.05)
        started = time.perf_counter()
        assert await tier.get("k", 0.0) is None
        assert time.perf_counter() - started < 1.0
        assert tier.errors == 1
        assert tier.breaker.metrics.failed_requests == 1

    async def test_stalls_open_the_breaker(self):
        tier = SharedTier(StallingStore(), timeout_sec=0.01)
        for _ in range(5):
            await tier.set(_entry("k"), 60)
        assert tier.breaker.can_execute() is False

    async def test_unreadable_entry_is_a_miss(self, store):
        await store.set_with_ttl("k", b"not json", 60)
        tier = SharedTier(store)
        assert await tier.get("k", 0.0) is None

    async def test_no_store(self):
        tier = SharedTier(None)
        assert tier.available is False
        assert await tier.get("k", 0.0) is None
        assert await tier.delete_user("u") == 0


class TestPredictiveTier:
    def test_only_listed_tasks_hit(self):
        tier = PredictiveTier()
        prediction = Prediction(value={"x": 1}, expires_at=100.0, predicted_tasks=frozenset({"memory_manager"}))
        tier.put("u", "memory_manager", prediction)
        tier.put("u", "emotion_analyzer", prediction)
        assert tier.get("u", "memory_manager", 50.0) is prediction
        assert tier.get("u", "emotion_analyzer", 50.0) is None

    def test_expiry(self):
        tier = PredictiveTier()
        tier.put("u", "t", Prediction(value=1, expires_at=100.0, predicted_tasks=frozenset({"t"})))
        assert tier.get("u", "t", 100.0) is None
        assert len(tier) == 0


# ========================================================================
# SHARED STORES
# ========================================================================


class TestInMemorySharedStore:
    async def test_pattern_delete(self, store):
        await store.set_with_ttl("u1:a", b"1", 60)
        await store.set_with_ttl("u1:b", b"2", 60)
        await store.set_with_ttl("u2:a", b"3", 60)
        assert await store.delete("u1:*") == 2
        assert await store.get("u2:a") == b"3"

    async def test_ttl(self, store):
        await store.set_with_ttl("k", b"1", 0)
        assert await store.get("k") is None


class TestRedisSharedStore:
    async def test_prefixes_keys(self):
        client = MagicMock()
        client.get.return_value = b"payload"
        shared = RedisSharedStore(client, prefix="facet:")
        assert await shared.get("u:k") == b"payload"
        client.get.assert_called_once_with("facet:u:k")

    async def test_setex(self):
        client = MagicMock()
        shared = RedisSharedStore(client)
        await shared.set_with_ttl("k", b"v", 300)
        client.setex.assert_called_once_with("facet:k", 300, b"v")

    async def test_delete_scans_then_deletes(self):
        client = MagicMock()
        client.scan_iter.return_value = iter([b"facet:u:1", b"facet:u:2"])
        client.delete.return_value = 2
        shared = RedisSharedStore(client)
        assert await shared.delete("u:*") == 2
        client.scan_iter.assert_called_once_with(match="facet:u:*")
        client.delete.assert_called_once_with(b"facet:u:1", b"facet:u:2")

    async def test_delete_nothing(self):
        client = MagicMock()
        client.scan_iter.return_value = iter([])
        assert await RedisSharedStore(client).delete("u:*") == 0
        client.delete.assert_not_called()


# ========================================================================
# HIERARCHY
# ========================================================================


class TestKeys:
    def test_key_shape(self):
        key = build_key("emotion_analyzer", "hello there", "user-1")
        user, task, digest = key.split(":")
        assert (user, task) == ("user-1", "emotion_analyzer")
        assert len(digest) == 24

    def test_keys_differ_per_user(self):
        assert build_key("t", "x", "a") != build_key("t", "x", "b")


class TestReadThrough:
    async def test_miss(self, cache):
        assert await cache.get("nope", _ctx()) is None

    async def test_local_hit(self, cache):
        await cache.set("k", {"a": 1}, _ctx())
        lookup = await cache.lookup("k", _ctx())
        assert lookup.value == {"a": 1}
        assert lookup.tier == CacheTier.LOCAL

    async def test_shared_hit_is_promoted(self, cache):
        await cache.set("k", {"a": 1}, _ctx(task_id="memory_manager"))
        cache.local.clear()
        first = await cache.lookup("k", _ctx(task_id="memory_manager"))
        second = await cache.lookup("k", _ctx(task_id="memory_manager"))
        assert first.tier == CacheTier.SHARED
        assert second.tier == CacheTier.LOCAL

    async def test_predictive_hit_is_promoted_as_a_hint(self, cache):
        cache.predictive.put("user-1", "memory_manager", Prediction(
            value={"p": 1},
            expires_at=cache._clock() + 60,
            predicted_tasks=frozenset({"memory_manager"}),
            confidence=0.5,
        ))
        first = await cache.lookup("k", _ctx(task_id="memory_manager"))
        second = await cache.lookup("k", _ctx(task_id="memory_manager"))
        assert first.tier == CacheTier.PREDICTIVE
        assert first.confidence == 0.5
        assert second.tier == CacheTier.PREDICTIVE
        assert len(cache.local) == 1

    async def test_real_result_replaces_predictive_hint(self, cache):
        cache.predictive.put("user-1", "memory_manager", Prediction(
            value={"p": 1},
            expires_at=cache._clock() + 60,
            predicted_tasks=frozenset({"memory_manager"}),
            confidence=0.5,
        ))
        await cache.lookup("k", _ctx(task_id="memory_manager"))
        await cache.set("k", {"a": 1}, _ctx(task_id="memory_manager"))
        lookup = await cache.lookup("k", _ctx(task_id="memory_manager"))
        assert lookup.value == {"a": 1}
        assert lookup.tier == CacheTier.LOCAL

    async def test_critical_context_never_reads(self, cache):
        await cache.set("k", {"a": 1}, _ctx())
        assert await cache.get("k", _ctx(risk_level="critical")) is None

    async def test_expired_entry_is_a_miss(self, cache, clock):
        await cache.set("k", {"a": 1}, _ctx())
        clock.now += 86400 * 2
        assert await cache.get("k", _ctx()) is None


class TestWritePolicy:
    async def test_low_confidence_rejected(self, cache):
        assert await cache.set("k", {"a": 1}, _ctx(confidence=0.5)) is False
        assert len(cache.local) == 0

    async def test_sensitive_rejected(self, cache):
        assert await cache.set("k", {"a": 1}, _ctx(sensitive=True)) is False

    async def test_high_personalization_rejected(self, cache):
        assert await cache.set("k", {"a": 1}, _ctx(personalization=0.95)) is False

    async def test_crisis_risk_payload_rejected(self, cache):
        value = {"payload": {"risk_level": "high", "response": "..."}}
        assert await cache.set("k", value, _ctx(task_id="risk_responder", confidence=0.9)) is False

    async def test_low_risk_payload_accepted(self, cache):
        value = {"payload": {"risk_level": "low", "response": ""}}
        assert await cache.set("k", value, _ctx(task_id="risk_responder", confidence=0.9)) is True

    async def test_unstable_low_confidence_stays_local(self, cache, store):
        await cache.set("k", {"a": 1}, _ctx(task_id="emotion_analyzer", confidence=0.75))
        assert len(store) == 0

    async def test_stable_task_goes_shared(self, cache, store):
        await cache.set("k", {"a": 1}, _ctx(task_id="memory_manager", confidence=0.65))
        assert len(store) == 1

    async def test_confident_result_goes_shared(self, cache, store):
        await cache.set("k", {"a": 1}, _ctx(task_id="emotion_analyzer", confidence=0.85))
        assert len(store) == 1

    async def test_shared_outage_does_not_break_writes(self, clock):
        failing = MagicMock()
        failing.set_with_ttl = AsyncMock(side_effect=ConnectionError("down"))
        cache = CacheHierarchy(Settings(), shared_store=failing, clock=clock)
        assert await cache.set("k", {"a": 1}, _ctx(task_id="memory_manager")) is True
        assert await cache.get("k", _ctx(task_id="memory_manager")) == {"a": 1}


class TestAdaptiveTTL:
    def test_formula(self, cache):
        # 3600 × 2.0 (memory) × 1.0 × 0.8
        assert cache.adaptive_ttl("memory_manager", 0.8) == 5760

    def test_strategy_factor(self, cache):
        balanced = cache.adaptive_ttl("support_advisor", 0.8)
        assert cache.adaptive_ttl("support_advisor", 0.8, CacheStrategy.AGGRESSIVE) == balanced * 2
        assert cache.adaptive_ttl("support_advisor", 0.8, CacheStrategy.CONSERVATIVE) == balanced // 2

    def test_clamped_low(self, cache):
        # 3600 × 0.3 × 0.5 × 0.1 = 54s → 300s floor
        assert cache.adaptive_ttl("risk_responder", 0.1, CacheStrategy.CONSERVATIVE) == 300

    def test_clamped_high(self, clock):
        cache = CacheHierarchy(Settings(cache_base_ttl_seconds=80000), clock=clock)
        assert cache.adaptive_ttl("memory_manager", 1.0) == 86400


class TestInvalidation:
    async def test_preference_change_drops_user_entries(self, cache, store):
        await cache.set(build_key("plan", "x", "user-1"), {"complexity": "simple"}, _ctx(task_id="plan", confidence=0.9))
        await cache.set(build_key("memory_manager", "x", "user-1"), {"a": 1}, _ctx(task_id="memory_manager"))
        other = CacheContext(user_id="user-2", task_id="memory_manager", confidence=0.9)
        await cache.set(build_key("memory_manager", "x", "user-2"), {"a": 2}, other)

        removed = await cache.invalidate_user_preferences("user-1")
        assert removed >= 2
        assert await cache.get(build_key("plan", "x", "user-1"), _ctx(task_id="plan")) is None
        assert await cache.get(build_key("memory_manager", "x", "user-2"), other) == {"a": 2}

    async def test_risk_transition_clears_every_tier(self, cache):
        key = build_key("memory_manager", "x", "user-1")
        await cache.set(key, {"a": 1}, _ctx(task_id="memory_manager", confidence=0.9))
        await cache.set(key, {"a": 1}, _ctx(task_id="memory_manager", confidence=0.9))
        await cache.run_warming_job()
        assert len(cache.predictive) == 1
        cache.enqueue_warming(WarmingItem(key=key, value={"a": 1}, context=_ctx(task_id="memory_manager")))

        await cache.invalidate_risk_transition("user-1")
        assert len(cache.local) == 0
        assert len(cache.predictive) == 0
        assert cache.warming_queue_size == 0
        cache.local.clear()
        assert await cache.get(key, _ctx(task_id="memory_manager")) is None


class TestWarming:
    async def test_queue_is_drained_by_job(self, cache):
        cache.enqueue_warming(WarmingItem(key="k1", value={"a": 1}, context=_ctx()))
        cache.enqueue_warming(WarmingItem(key="k2", value={"a": 2}, context=_ctx(confidence=0.2)))
        assert cache.warming_queue_size == 2
        report = await cache.run_warming_job()
        assert (report.warmed, report.skipped) == (1, 1)
        assert cache.warming_queue_size == 0

    async def test_nothing_warms_on_its_own(self, cache):
        cache.enqueue_warming(WarmingItem(key="k1", value={"a": 1}, context=_ctx()))
        assert await cache.get("k1", _ctx()) is None

    async def test_predictions_need_repeated_confident_results(self, cache):
        await cache.set("k", {"a": 1}, _ctx(task_id="memory_manager", confidence=0.75))
        report = await cache.run_warming_job()
        assert report.predictions == 0
        await cache.set("k", {"a": 1}, _ctx(task_id="memory_manager", confidence=0.75))
        report = await cache.run_warming_job()
        assert report.predictions == 1
        assert cache.predictive.keys() == ["user-1:memory_manager"]


class TestAnalytics:
    async def test_counts_hits_and_misses(self, cache):
        await cache.set("k", {"a": 1}, _ctx())
        await cache.get("k", _ctx())
        await cache.get("missing", _ctx())
        data = cache.analytics()
        assert data["total_requests"] == 2
        assert data["hits"]["local"] == 1
        assert data["misses"] == 1
        assert data["overall_hit_rate"] == 0.5
        assert data["hit_rates"]["local"] > 0

    async def test_rejected_writes_counted(self, cache):
        await cache.set("k", {"a": 1}, _ctx(confidence=0.1))
        assert cache.analytics()["rejected_writes"] == 1

    async def test_recommendations(self, cache):
        for i in range(60):
            await cache.get(f"missing-{i}", _ctx())
        recs = cache.analytics()["recommendations"]
        assert "increase_local_capacity" in recs
        assert "schedule_cache_warming" in recs
