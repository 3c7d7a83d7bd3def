"""Shared key/value store collaborators for cache tier 2.

``SharedStore`` is the boundary the cache talks to: byte values, TTL on
write, glob-pattern delete.  Two implementations:

- ``InMemorySharedStore`` for single-process deployments and tests
- ``RedisSharedStore`` over an injected (synchronous) redis client, with
  blocking calls pushed to the default executor
"""

import asyncio
import fnmatch
import logging
import time
from typing import Dict, List, Optional, Protocol, Tuple

logger = logging.getLogger(__name__)


class SharedStore(Protocol):
    """Remote shared cache boundary."""

    async def get(self, key: str) -> Optional[bytes]:
        """Return the stored bytes or ``None`` on a miss."""
        ...

    async def set_with_ttl(self, key: str, value: bytes, ttl_seconds: int) -> None:
        """Store *value* under *key* for *ttl_seconds*."""
        ...

    async def delete(self, key_pattern: str) -> int:
        """Delete every key matching the glob *key_pattern*; return the count."""
        ...


class InMemorySharedStore:
    """Process-local stand-in for a shared store."""

    def __init__(self) -> None:
        self._data: Dict[str, Tuple[bytes, float]] = {}

    async def get(self, key: str) -> Optional[bytes]:
        item = self._data.get(key)
        if item is None:
            return None
        value, expires_at = item
        if expires_at <= time.time():
            self._data.pop(key, None)
            return None
        return value

    async def set_with_ttl(self, key: str, value: bytes, ttl_seconds: int) -> None:
        self._data[key] = (value, time.time() + ttl_seconds)

    async def delete(self, key_pattern: str) -> int:
        doomed = [k for k in self._data if fnmatch.fnmatchcase(k, key_pattern)]
        for key in doomed:
            self._data.pop(key, None)
        return len(doomed)

    def __len__(self) -> int:
        return len(self._data)


class RedisSharedStore:
    """Shared store over a redis client.

    Args:
        redis_client: client exposing ``get``, ``setex``, ``scan_iter`` and
            ``delete`` (the redis-py synchronous API).
        prefix: namespace prepended to every key.
    """

    def __init__(self, redis_client, prefix: str = "facet:") -> None:
        self.redis_client = redis_client
        self.prefix = prefix

    async def get(self, key: str) -> Optional[bytes]:
        return await self._run(self.redis_client.get, self.prefix + key)

    async def set_with_ttl(self, key: str, value: bytes, ttl_seconds: int) -> None:
        await self._run(self.redis_client.setex, self.prefix + key, ttl_seconds, value)

    async def delete(self, key_pattern: str) -> int:
        match = self.prefix + key_pattern

        def _delete() -> int:
            keys: List = list(self.redis_client.scan_iter(match=match))
            if not keys:
                return 0
            return int(self.redis_client.delete(*keys))

        deleted = await self._run(_delete)
        logger.debug("Deleted %d shared keys matching %s", deleted, match)
        return deleted

    @staticmethod
    async def _run(fn, *args):
        return await asyncio.get_running_loop().run_in_executor(None, fn, *args)
