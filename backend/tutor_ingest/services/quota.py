"""
Upload quota: daily LLM usage counter per user.

Each parse request consumes one unit before any model call is made:

    INCR  quota:llm:<user_id>:<YYYY-MM-DD>
    EXPIRE 86400            (first use of the day only)

usage > limit  → QuotaExceededError   (QUOTA_EXCEEDED)
Redis failure  → QuotaServiceError    (QUOTA_ERROR), unless fail_open is set,
                 in which case the request is allowed and a warning logged.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Protocol

import redis.asyncio as redis

from tutor_ingest.core.errors import QuotaExceededError, QuotaServiceError

logger = logging.getLogger(__name__)

QUOTA_KEY_PREFIX   = "quota:llm:"
QUOTA_TTL_SECONDS  = 24 * 60 * 60


@dataclass(frozen=True)
class QuotaResult:
    allowed:   bool
    usage:     int
    limit:     int
    remaining: int


class QuotaService(Protocol):
    async def check_and_consume(self, user_id: str) -> QuotaResult: ...


async def enforce_quota(quota: QuotaService, user_id: str) -> QuotaResult:
    """Consume one unit or raise QuotaExceededError."""
    result = await quota.check_and_consume(user_id)
    if not result.allowed:
        raise QuotaExceededError(f"Daily limit reached ({result.usage}/{result.limit})")
    return result


class RedisQuotaService:
    def __init__(
        self,
        client:    redis.Redis,
        limit:     int,
        enabled:   bool                      = True,
        fail_open: bool                      = False,
        today:     Callable[[], str] | None  = None,
    ) -> None:
        self._client    = client
        self._limit     = limit
        self._enabled   = enabled
        self._fail_open = fail_open
        self._today     = today or _utc_date

    def _key(self, user_id: str) -> str:
        return f"{QUOTA_KEY_PREFIX}{user_id}:{self._today()}"

    async def check_and_consume(self, user_id: str) -> QuotaResult:
        if not self._enabled:
            return QuotaResult(allowed=True, usage=0, limit=self._limit, remaining=self._limit)

        key = self._key(user_id)
        try:
            usage = int(await self._client.incr(key))
            if usage == 1:
                await self._client.expire(key, QUOTA_TTL_SECONDS)
        except Exception as exc:
            if self._fail_open:
                logger.warning("Quota | backend unavailable, allowing user=%s: %s", user_id, exc)
                return QuotaResult(allowed=True, usage=0, limit=self._limit, remaining=self._limit)
            logger.error("Quota | backend unavailable user=%s: %s", user_id, exc)
            raise QuotaServiceError() from exc

        remaining = max(0, self._limit - usage)
        allowed   = usage <= self._limit
        if not allowed:
            logger.info("Quota | denied user=%s usage=%d limit=%d", user_id, usage, self._limit)
        return QuotaResult(allowed=allowed, usage=usage, limit=self._limit, remaining=remaining)


def _utc_date() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d")
