"""
Shared cooldown storage for the key pool.

Several API processes can share one key configuration. A cooldown set by
one instance must be honoured by all, so the cooldown_until timestamps are
kept as a single JSON array in Redis, indexed by key id:

    llm:key_pool:cooldowns  →  "[0, 1718000030.5, 0]"
"""

from __future__ import annotations

import json
import logging
from typing import Protocol

import redis.asyncio as redis

logger = logging.getLogger(__name__)

# Longest ladder rung is 15 minutes; a day is plenty for stale arrays to expire.
_COOLDOWN_TTL_SECONDS = 24 * 60 * 60


class CooldownStore(Protocol):
    async def load(self) -> list[float]: ...

    async def save(self, cooldowns: list[float]) -> None: ...


class RedisCooldownStore:
    """CooldownStore backed by one Redis string key."""

    def __init__(
        self,
        client:      redis.Redis,
        key:         str = "llm:key_pool:cooldowns",
        ttl_seconds: int = _COOLDOWN_TTL_SECONDS,
    ) -> None:
        self._client = client
        self._key    = key
        self._ttl    = ttl_seconds

    async def load(self) -> list[float]:
        raw = await self._client.get(self._key)
        if not raw:
            return []
        try:
            data = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("Cooldown store | discarding malformed value at key=%s", self._key)
            return []
        if not isinstance(data, list):
            return []
        return [float(v) if isinstance(v, (int, float)) else 0.0 for v in data]

    async def save(self, cooldowns: list[float]) -> None:
        await self._client.set(self._key, json.dumps(cooldowns), ex=self._ttl)
