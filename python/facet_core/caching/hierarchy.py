"""Read-through, write-promote cache hierarchy.

Tiers are consulted in increasing latency order (local, shared,
predictive); a hit below tier 1 is copied up into tier 1.  Writes always go
to tier 1, to tier 2 only when the result is durable-worthy, and never to
tier 3: speculative entries come from ``run_warming_job()``, which the host
process schedules explicitly.

Every cache fault is a miss.  Nothing here raises into the scheduler.
"""

from __future__ import annotations

import hashlib
import logging
import threading
import time
from collections import Counter, deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional

from facet_core.caching.shared_store import SharedStore
from facet_core.caching.tiers import (
    CacheEntry,
    CacheTier,
    LocalTier,
    Prediction,
    PredictiveTier,
    SharedTier,
)
from facet_core.config.settings import Settings
from facet_core.exceptions import CircuitBreaker, CircuitBreakerConfig

logger = logging.getLogger(__name__)

PLAN_TASK_ID = "plan"

TTL_MULTIPLIERS: Dict[str, float] = {
    "emotion_analyzer": 0.5,
    "memory_manager": 2.0,
    "risk_responder": 0.3,
    "support_advisor": 1.5,
    "progress_tracker": 1.8,
    PLAN_TASK_ID: 1.0,
}

# Results of these tasks change slowly; they qualify for the shared tier
STABLE_TASKS = frozenset({"memory_manager", "support_advisor", "progress_tracker"})

SENSITIVE_RISK_LEVELS = frozenset({"high", "critical", "crisis"})
MAX_PERSONALIZATION = 0.9
PREDICTION_CONFIDENCE = 0.7
HIT_RATE_ALPHA = 0.1
MIN_PATTERN_OBSERVATIONS = 2


class CacheStrategy(str, Enum):
    BALANCED = "balanced"
    AGGRESSIVE = "aggressive"
    CONSERVATIVE = "conservative"


STRATEGY_FACTORS: Dict[CacheStrategy, float] = {
    CacheStrategy.BALANCED: 1.0,
    CacheStrategy.AGGRESSIVE: 2.0,
    CacheStrategy.CONSERVATIVE: 0.5,
}


@dataclass(frozen=True)
class CacheContext:
    """What the cache needs to know about a value besides its key."""

    user_id: str
    task_id: str
    confidence: float = 1.0
    risk_level: str = "none"
    sensitive: bool = False
    personalization: float = 0.0


@dataclass(frozen=True)
class CacheLookup:
    """A hit, with the tier it came from."""

    value: Any
    tier: CacheTier
    confidence: float


@dataclass(frozen=True)
class WarmingItem:
    key: str
    value: Any
    context: CacheContext
    strategy: CacheStrategy = CacheStrategy.BALANCED


@dataclass
class WarmingReport:
    warmed: int = 0
    predictions: int = 0
    skipped: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {"warmed": self.warmed, "predictions": self.predictions, "skipped": self.skipped}


@dataclass
class CacheAnalytics:
    total_requests: int = 0
    hits: Counter = field(default_factory=Counter)
    misses: int = 0
    rejected_writes: int = 0
    # Exponential moving averages per tier, 0..1
    hit_rates: Dict[str, float] = field(default_factory=lambda: {t.value: 0.0 for t in CacheTier})
    average_latency_ms: float = 0.0

    @property
    def overall_hit_rate(self) -> float:
        if not self.total_requests:
            return 0.0
        return sum(self.hits.values()) / self.total_requests


def build_key(task_id: str, normalized_input: str, user_id: str) -> str:
    """``<user>:<task>:<digest>`` so per-user invalidation is a prefix match."""
    digest = hashlib.sha256(normalized_input.encode("utf-8")).hexdigest()[:24]
    return f"{user_id}:{task_id}:{digest}"


class CacheHierarchy:
    """Three-tier cache shared by every request and user."""

    def __init__(
        self,
        settings: Settings,
        shared_store: Optional[SharedStore] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self._clock = clock
        self.local = LocalTier(settings.cache_local_capacity)
        self.shared = SharedTier(
            shared_store,
            CircuitBreaker("shared-cache", CircuitBreakerConfig(
                failure_threshold=settings.circuit_breaker_failure_threshold,
                recovery_timeout_sec=settings.circuit_breaker_timeout,
                success_threshold=settings.circuit_breaker_success_threshold,
            )),
            timeout_sec=settings.cache_shared_timeout_ms / 1000,
        )
        self.predictive = PredictiveTier()

        self._analytics = CacheAnalytics()
        self._analytics_lock = threading.Lock()
        self._warming_queue: Deque[WarmingItem] = deque()
        # user → task → observations, and the freshest confident value per user:task
        self._patterns: Dict[str, Counter] = {}
        self._candidates: Dict[str, Dict[str, Any]] = {}

    # ── Read path ────────────────────────────────────────────────────

    async def get(self, key: str, context: CacheContext) -> Optional[Any]:
        lookup = await self.lookup(key, context)
        return None if lookup is None else lookup.value

    async def lookup(self, key: str, context: CacheContext) -> Optional[CacheLookup]:
        """Like ``get`` but reports the tier of origin."""
        started = time.perf_counter()
        if not self._context_cacheable(context):
            self._record(None, started)
            return None

        now = self._clock()
        entry = self.local.get(key, now)
        if entry is not None:
            self._record(CacheTier.LOCAL, started)
            return CacheLookup(entry.value, entry.tier, entry.confidence)

        entry = await self.shared.get(key, now)
        if entry is not None:
            self.local.set(entry)
            self._record(CacheTier.SHARED, started)
            return CacheLookup(entry.value, CacheTier.SHARED, entry.confidence)

        prediction = self.predictive.get(context.user_id, context.task_id, now)
        if prediction is not None:
            self.local.set(CacheEntry(
                key=key,
                value=prediction.value,
                created_at=now,
                expires_at=prediction.expires_at,
                tier=CacheTier.PREDICTIVE,
                confidence=prediction.confidence,
                task_id=context.task_id,
            ))
            self._record(CacheTier.PREDICTIVE, started)
            return CacheLookup(prediction.value, CacheTier.PREDICTIVE, prediction.confidence)

        self._record(None, started)
        return None

    # ── Write path ───────────────────────────────────────────────────

    def should_cache(self, value: Any, context: CacheContext) -> bool:
        if not self._context_cacheable(context):
            return False
        if context.confidence < self.settings.cache_confidence_floor:
            return False
        if context.personalization > MAX_PERSONALIZATION:
            return False
        if context.task_id == "risk_responder" and isinstance(value, dict):
            payload = value.get("payload", value)
            if isinstance(payload, dict) and str(payload.get("risk_level", "")).lower() in SENSITIVE_RISK_LEVELS:
                return False
        return True

    def adaptive_ttl(
        self, task_id: str, confidence: float, strategy: CacheStrategy = CacheStrategy.BALANCED
    ) -> int:
        """``base × task multiplier × confidence`` (scaled by strategy), clamped."""
        ttl = (
            self.settings.cache_base_ttl_seconds
            * TTL_MULTIPLIERS.get(task_id, 1.0)
            * STRATEGY_FACTORS[strategy]
            * confidence
        )
        return int(max(self.settings.cache_min_ttl_seconds, min(self.settings.cache_max_ttl_seconds, ttl)))

    async def set(
        self,
        key: str,
        value: Any,
        context: CacheContext,
        strategy: CacheStrategy = CacheStrategy.BALANCED,
    ) -> bool:
        """Store *value*.  Returns ``False`` when the value must not be cached."""
        if not self.should_cache(value, context):
            with self._analytics_lock:
                self._analytics.rejected_writes += 1
            logger.debug("Refusing to cache %s (task=%s)", key, context.task_id)
            return False

        now = self._clock()
        ttl = self.adaptive_ttl(context.task_id, context.confidence, strategy)
        entry = CacheEntry(
            key=key,
            value=value,
            created_at=now,
            expires_at=now + ttl,
            tier=CacheTier.LOCAL,
            confidence=context.confidence,
            task_id=context.task_id,
        )
        self.local.set(entry)

        if context.task_id in STABLE_TASKS or context.confidence > self.settings.cache_durable_confidence:
            await self.shared.set(entry, ttl)

        if context.confidence > PREDICTION_CONFIDENCE and context.task_id != PLAN_TASK_ID:
            self._observe(context.user_id, context.task_id, value)
        return True

    # ── Invalidation ─────────────────────────────────────────────────

    async def invalidate_user_preferences(self, user_id: str) -> int:
        """Drop a user's plan and task entries after a preference change."""
        removed = self.local.delete_prefix(f"{user_id}:")
        removed += await self.shared.delete_user(user_id)
        logger.info("Invalidated %d cache entries for %s after preference change", removed, user_id)
        return removed

    async def invalidate_risk_transition(self, user_id: str) -> int:
        """Drop everything cached for a user whose risk just turned critical."""
        removed = self.local.delete_prefix(f"{user_id}:")
        removed += await self.shared.delete_user(user_id)
        removed += self.predictive.delete_user(user_id)
        self._patterns.pop(user_id, None)
        self._candidates.pop(user_id, None)
        self._warming_queue = deque(i for i in self._warming_queue if i.context.user_id != user_id)
        logger.warning("Risk transition for %s: invalidated %d cache entries", user_id, removed)
        return removed

    # ── Warming ──────────────────────────────────────────────────────

    def enqueue_warming(self, item: WarmingItem) -> None:
        self._warming_queue.append(item)

    @property
    def warming_queue_size(self) -> int:
        return len(self._warming_queue)

    async def run_warming_job(self) -> WarmingReport:
        """Drain the warming queue and refresh predictive entries.

        Meant to be triggered by the host's scheduler; nothing in this
        class starts it on its own.
        """
        report = WarmingReport()
        while self._warming_queue:
            item = self._warming_queue.popleft()
            if await self.set(item.key, item.value, item.context, item.strategy):
                report.warmed += 1
            else:
                report.skipped += 1

        now = self._clock()
        expires_at = now + self.settings.cache_prediction_ttl_seconds
        for user_id, counts in list(self._patterns.items()):
            predicted = frozenset(t for t, n in counts.items() if n >= MIN_PATTERN_OBSERVATIONS)
            if not predicted:
                continue
            total = sum(counts.values())
            for task_id in predicted:
                value = self._candidates.get(user_id, {}).get(task_id)
                if value is None:
                    continue
                self.predictive.put(user_id, task_id, Prediction(
                    value=value,
                    expires_at=expires_at,
                    predicted_tasks=predicted,
                    confidence=round(counts[task_id] / total, 3),
                ))
                report.predictions += 1

        logger.info(
            "Cache warming: %d warmed, %d predictions, %d skipped",
            report.warmed, report.predictions, report.skipped,
        )
        return report

    # ── Analytics ────────────────────────────────────────────────────

    def analytics(self) -> Dict[str, Any]:
        with self._analytics_lock:
            a = self._analytics
            data = {
                "total_requests": a.total_requests,
                "hits": {t.value: a.hits.get(t.value, 0) for t in CacheTier},
                "misses": a.misses,
                "rejected_writes": a.rejected_writes,
                "hit_rates": {k: round(v, 4) for k, v in a.hit_rates.items()},
                "overall_hit_rate": round(a.overall_hit_rate, 4),
                "average_latency_ms": round(a.average_latency_ms, 4),
            }
        data.update({
            "local_size": len(self.local),
            "local_evictions": self.local.evictions,
            "predictive_size": len(self.predictive),
            "shared_available": self.shared.available,
            "shared_errors": self.shared.errors,
            "warming_queue": self.warming_queue_size,
            "recommendations": self._recommendations(data),
        })
        return data

    def _recommendations(self, data: Dict[str, Any]) -> List[str]:
        recs: List[str] = []
        if data["total_requests"] >= 50 and data["hit_rates"][CacheTier.LOCAL.value] < 0.3:
            recs.append("increase_local_capacity")
        if data["shared_errors"]:
            recs.append("check_shared_store")
        if data["total_requests"] >= 50 and data["overall_hit_rate"] < 0.2:
            recs.append("schedule_cache_warming")
        return recs

    # ── Internal helpers ─────────────────────────────────────────────

    @staticmethod
    def _context_cacheable(context: CacheContext) -> bool:
        return not context.sensitive and context.risk_level.lower() not in ("critical", "crisis")

    def _observe(self, user_id: str, task_id: str, value: Any) -> None:
        self._patterns.setdefault(user_id, Counter())[task_id] += 1
        self._candidates.setdefault(user_id, {})[task_id] = value

    def _record(self, tier: Optional[CacheTier], started: float) -> None:
        latency = (time.perf_counter() - started) * 1000
        with self._analytics_lock:
            a = self._analytics
            a.total_requests += 1
            if tier is None:
                a.misses += 1
            else:
                a.hits[tier.value] += 1
            for t in CacheTier:
                hit = 1.0 if t == tier else 0.0
                a.hit_rates[t.value] = (1 - HIT_RATE_ALPHA) * a.hit_rates[t.value] + HIT_RATE_ALPHA * hit
            n = a.total_requests
            a.average_latency_ms += (latency - a.average_latency_ms) / n
