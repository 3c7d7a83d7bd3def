"""The three cache tiers.

- ``LocalTier``: process-local LRU with a strict capacity, thread-safe
- ``SharedTier``: TTL store behind a ``SharedStore``; every failure is a miss
- ``PredictiveTier``: speculative entries per ``user:task``, written only by
  the warming job
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

from facet_core.caching.shared_store import SharedStore
from facet_core.exceptions import CircuitBreaker, CircuitOpenError

logger = logging.getLogger(__name__)

EVICTION_FRACTION = 0.2


class CacheTier(str, Enum):
    LOCAL = "local"
    SHARED = "shared"
    PREDICTIVE = "predictive"


@dataclass(frozen=True)
class CacheEntry:
    key: str
    value: Any
    created_at: float
    expires_at: float
    tier: CacheTier
    confidence: float = 1.0
    task_id: Optional[str] = None

    def expired(self, now: float) -> bool:
        return self.expires_at <= now

    def promoted(self, tier: CacheTier) -> "CacheEntry":
        return replace(self, tier=tier)

    def to_bytes(self) -> bytes:
        return json.dumps({
            "value": self.value,
            "created_at": self.created_at,
            "expires_at": self.expires_at,
            "confidence": self.confidence,
            "task_id": self.task_id,
        }).encode("utf-8")

    @classmethod
    def from_bytes(cls, key: str, raw: bytes) -> "CacheEntry":
        data = json.loads(raw)
        return cls(
            key=key,
            value=data["value"],
            created_at=data["created_at"],
            expires_at=data["expires_at"],
            tier=CacheTier.SHARED,
            confidence=data.get("confidence", 1.0),
            task_id=data.get("task_id"),
        )


# ── Tier 1 ───────────────────────────────────────────────────────────


class LocalTier:
    """Capacity-bounded LRU.  When full, the oldest 20% are evicted at once."""

    def __init__(self, capacity: int) -> None:
        self.capacity = capacity
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = threading.Lock()
        self.evictions = 0

    def get(self, key: str, now: float) -> Optional[CacheEntry]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.expired(now):
                del self._entries[key]
                return None
            self._entries.move_to_end(key)
            return entry

    def set(self, entry: CacheEntry) -> None:
        with self._lock:
            if entry.key in self._entries:
                self._entries.move_to_end(entry.key)
            elif len(self._entries) >= self.capacity:
                self._evict_locked()
            # Predictive entries stay marked as hints
            if entry.tier != CacheTier.PREDICTIVE:
                entry = entry.promoted(CacheTier.LOCAL)
            self._entries[entry.key] = entry

    def delete_prefix(self, prefix: str) -> int:
        with self._lock:
            doomed = [k for k in self._entries if k.startswith(prefix)]
            for key in doomed:
                del self._entries[key]
            return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _evict_locked(self) -> None:
        count = min(len(self._entries), max(1, int(self.capacity * EVICTION_FRACTION)))
        for _ in range(count):
            self._entries.popitem(last=False)
        self.evictions += count
        logger.debug("Local cache full; evicted %d entries", count)


# ── Tier 2 ───────────────────────────────────────────────────────────


class SharedTier:
    """TTL tier over a shared store.  Unavailability degrades to a miss."""

    def __init__(
        self,
        store: Optional[SharedStore],
        breaker: Optional[CircuitBreaker] = None,
        timeout_sec: float = 0.15,
    ) -> None:
        self.store = store
        self.breaker = breaker or CircuitBreaker("shared-cache")
        self.timeout_sec = timeout_sec
        self.errors = 0

    @property
    def available(self) -> bool:
        return self.store is not None

    async def get(self, key: str, now: float) -> Optional[CacheEntry]:
        raw = await self._call("get", key)
        if raw is None:
            return None
        try:
            entry = CacheEntry.from_bytes(key, raw)
        except (ValueError, KeyError, TypeError) as e:
            logger.warning("Discarding unreadable shared cache entry %s: %s", key, e)
            self.errors += 1
            return None
        return None if entry.expired(now) else entry

    async def set(self, entry: CacheEntry, ttl_seconds: int) -> bool:
        try:
            raw = entry.to_bytes()
        except (TypeError, ValueError) as e:
            logger.debug("Value for %s is not serialisable; skipping shared tier: %s", entry.key, e)
            return False
        await self._call("set_with_ttl", entry.key, raw, ttl_seconds)
        return True

    async def delete_user(self, user_id: str) -> int:
        deleted = await self._call("delete", f"{user_id}:*")
        return int(deleted or 0)

    async def _call(self, method: str, *args):
        if self.store is None:
            return None
        if not self.breaker.can_execute():
            self.breaker.record_rejection()
            logger.debug("Shared cache skipped: %s", CircuitOpenError(self.breaker.name))
            return None
        try:
            result = await asyncio.wait_for(getattr(self.store, method)(*args), timeout=self.timeout_sec)
        except asyncio.TimeoutError:
            self.errors += 1
            self.breaker.record_failure()
            logger.warning("Shared cache %s timed out after %.0fms, treating as miss", method, self.timeout_sec * 1000)
            return None
        except Exception as e:
            self.errors += 1
            self.breaker.record_failure()
            logger.warning("Shared cache %s failed, treating as miss: %s", method, e)
            return None
        self.breaker.record_success()
        return result


# ── Tier 3 ───────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Prediction:
    value: Any
    expires_at: float
    predicted_tasks: FrozenSet[str] = field(default_factory=frozenset)
    confidence: float = 0.0


class PredictiveTier:
    """Speculative per-user hints.  Never authoritative."""

    def __init__(self) -> None:
        self._predictions: Dict[str, Prediction] = {}
        self._lock = threading.Lock()

    def get(self, user_id: str, task_id: str, now: float) -> Optional[Prediction]:
        key = f"{user_id}:{task_id}"
        with self._lock:
            prediction = self._predictions.get(key)
            if prediction is None:
                return None
            if prediction.expires_at <= now:
                del self._predictions[key]
                return None
        if task_id not in prediction.predicted_tasks:
            return None
        return prediction

    def put(self, user_id: str, task_id: str, prediction: Prediction) -> None:
        with self._lock:
            self._predictions[f"{user_id}:{task_id}"] = prediction

    def delete_user(self, user_id: str) -> int:
        prefix = f"{user_id}:"
        with self._lock:
            doomed = [k for k in self._predictions if k.startswith(prefix)]
            for key in doomed:
                del self._predictions[key]
        return len(doomed)

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._predictions)

    def __len__(self) -> int:
        with self._lock:
            return len(self._predictions)
