"""
LLM Key Pool: Round-Robin Credentials with Graduated Backoff

One rate-limited API key must not stall every ingestion job in the process,
and an invalid key must stop being used. The pool holds N credentials and
hands them out round-robin, skipping keys that are cooling down or disabled.

Per-key state machine:

    healthy ──(429/500/503)──► cooldown ──(cooldown_until elapsed)──► healthy
       │                          │
       └────────(401/403)─────────┴──────────► disabled   (terminal)

Backoff ladder:
  Each retryable failure puts the key in cooldown for ladder[step] seconds
  and advances step (capped at the last rung). Only a successful call on
  that key resets step to 0, so a key that fails again right after
  recovering escalates: 30s → 60s → 5m → 15m → 15m ...

Status-code policy (with_retry):
  - 429 / 500 / 503  → cooldown the key, retry with the next key
  - 401 / 403        → disable the key forever, raise
  - anything else    → raise immediately, no rotation
  - no status at all → raise immediately (timeouts, parse errors, bugs)

Cross-process coordination:
  When a CooldownStore is configured, cooldown_until timestamps (and only
  those) are shared as one array indexed by key id. Request/error counters
  stay per-process and are diagnostic only.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Sequence, TypeVar

from tutor_ingest.core.errors import KeyPoolExhaustedError, extract_status_code
from tutor_ingest.llm.cooldown_store import CooldownStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------

DEFAULT_COOLDOWN_LADDER: tuple[float, ...] = (30.0, 60.0, 300.0, 900.0)

RETRYABLE_STATUS_CODES: frozenset[int] = frozenset({429, 500, 503})
DISABLING_STATUS_CODES: frozenset[int] = frozenset({401, 403})


def is_retryable_status(status: int) -> bool:
    return status in RETRYABLE_STATUS_CODES


def is_disabling_status(status: int) -> bool:
    return status in DISABLING_STATUS_CODES


def mask_key(key: str) -> str:
    """Return a log-safe identifier for an API key."""
    if len(key) <= 8:
        return "****"
    return f"{key[:4]}****{key[-2:]}"


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------

class CredentialStatus(str, Enum):
    HEALTHY  = "healthy"
    COOLDOWN = "cooldown"
    DISABLED = "disabled"


@dataclass
class CredentialStats:
    requests:        int          = 0
    errors:          int          = 0
    last_error_code: int | None   = None
    last_error_at:   float | None = None


@dataclass
class CredentialEntry:
    id:             int
    masked_key:     str
    api_key:        str              = field(repr=False)
    status:         CredentialStatus = CredentialStatus.HEALTHY
    cooldown_until: float            = 0.0     # epoch seconds
    cooldown_step:  int              = 0       # index into the backoff ladder
    stats:          CredentialStats  = field(default_factory=CredentialStats)


@dataclass(frozen=True)
class Credential:
    """What an operation receives from the pool: one key to call with."""
    id:         int
    masked_key: str
    api_key:    str = field(repr=False)


@dataclass(frozen=True)
class CredentialSnapshot:
    """Read-only view of one key for monitoring endpoints."""
    id:              int
    masked_key:      str
    status:          CredentialStatus
    cooldown_until:  float
    cooldown_step:   int
    requests:        int
    errors:          int
    last_error_code: int | None
    last_error_at:   float | None


# ---------------------------------------------------------------------------
# KeyPool
# ---------------------------------------------------------------------------

class KeyPool:
    """
    Process-wide credential pool. Construct once at startup and share.

    The internal lock only guards the pointer scan and per-key state updates;
    it is never held across a model call or a cooldown-store round trip.
    """

    def __init__(
        self,
        keys:            Sequence[str],
        cooldown_ladder: Sequence[float]        = DEFAULT_COOLDOWN_LADDER,
        cooldown_store:  CooldownStore | None   = None,
        clock:           Callable[[], float]    = time.time,
    ) -> None:
        keys = [k.strip() for k in keys if k and k.strip()]
        if not keys:
            raise ValueError("Missing LLM API keys; set LLM_API_KEYS")
        if not cooldown_ladder:
            raise ValueError("cooldown_ladder must have at least one step")

        self._entries = [
            CredentialEntry(id=i, masked_key=mask_key(k), api_key=k)
            for i, k in enumerate(keys)
        ]
        self._ladder  = tuple(float(s) for s in cooldown_ladder)
        self._store   = cooldown_store
        self._clock   = clock
        self._pointer = 0
        self._lock    = asyncio.Lock()

    @property
    def size(self) -> int:
        return len(self._entries)

    # ------------------------------------------------------------------
    # Acquisition
    # ------------------------------------------------------------------

    async def acquire(self) -> Credential:
        """
        Return the next healthy key, scanning round-robin from the pointer.

        Expired cooldowns are promoted back to healthy during the scan.
        Raises KeyPoolExhaustedError if no key is currently selectable.
        """
        shared = await self._load_shared_cooldowns()

        async with self._lock:
            now = self._clock()
            if shared:
                self._merge_shared_cooldowns(shared, now)

            total = len(self._entries)
            for offset in range(total):
                idx   = (self._pointer + offset) % total
                entry = self._entries[idx]

                if entry.status is CredentialStatus.COOLDOWN and now >= entry.cooldown_until:
                    entry.status = CredentialStatus.HEALTHY
                    logger.info("KeyPool | key=%s recovered from cooldown", entry.masked_key)

                if entry.status is CredentialStatus.HEALTHY:
                    self._pointer = (idx + 1) % total
                    entry.stats.requests += 1
                    return Credential(id=entry.id, masked_key=entry.masked_key, api_key=entry.api_key)

        raise KeyPoolExhaustedError()

    # ------------------------------------------------------------------
    # Outcome reporting
    # ------------------------------------------------------------------

    def report_success(self, key_id: int) -> None:
        """A call on this key succeeded; reset its backoff step."""
        entry = self._entries[key_id]
        entry.cooldown_step = 0

    async def report_failure(self, key_id: int, status: int) -> None:
        """Record a failed call and move the key to cooldown or disabled."""
        published_until: float | None = None

        async with self._lock:
            entry = self._entries[key_id]
            now   = self._clock()
            entry.stats.errors         += 1
            entry.stats.last_error_code = status
            entry.stats.last_error_at   = now

            if entry.status is CredentialStatus.DISABLED:
                return

            if is_disabling_status(status):
                entry.status = CredentialStatus.DISABLED
                logger.error("KeyPool | key=%s DISABLED (HTTP %d)", entry.masked_key, status)
                return

            if is_retryable_status(status):
                duration = self._ladder[min(entry.cooldown_step, len(self._ladder) - 1)]
                entry.status         = CredentialStatus.COOLDOWN
                entry.cooldown_until = now + duration
                entry.cooldown_step += 1
                published_until      = entry.cooldown_until
                logger.warning(
                    "KeyPool | key=%s COOLDOWN %.0fs step=%d (HTTP %d)",
                    entry.masked_key, duration, entry.cooldown_step, status,
                )

        if published_until is not None:
            await self._publish_cooldown(key_id, published_until)

    # ------------------------------------------------------------------
    # Call wrapper
    # ------------------------------------------------------------------

    async def with_retry(self, operation: Callable[[Credential], Awaitable[T]]) -> T:
        """
        Run `operation` with a pooled key, rotating on retryable failures.

        At most one attempt is made per key for one logical call. When every
        attempt fails with a retryable status, the last error is raised.
        """
        last_error: Exception | None = None
        tried: set[int] = set()

        for _ in range(self.size):
            try:
                credential = await self.acquire()
            except KeyPoolExhaustedError:
                if last_error is not None:
                    raise last_error
                raise

            if credential.id in tried:
                break
            tried.add(credential.id)

            try:
                result = await operation(credential)
            except Exception as exc:
                status = extract_status_code(exc)
                if status is None:
                    raise
                await self.report_failure(credential.id, status)
                if not is_retryable_status(status):
                    raise
                logger.warning(
                    "KeyPool | retryable failure key=%s status=%d, rotating",
                    credential.masked_key, status,
                )
                last_error = exc
                continue

            self.report_success(credential.id)
            return result

        if last_error is None:
            raise KeyPoolExhaustedError()
        raise last_error

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    def snapshot(self) -> list[CredentialSnapshot]:
        return [
            CredentialSnapshot(
                id=e.id,
                masked_key=e.masked_key,
                status=e.status,
                cooldown_until=e.cooldown_until,
                cooldown_step=e.cooldown_step,
                requests=e.stats.requests,
                errors=e.stats.errors,
                last_error_code=e.stats.last_error_code,
                last_error_at=e.stats.last_error_at,
            )
            for e in self._entries
        ]

    # ------------------------------------------------------------------
    # Shared cooldown store
    # ------------------------------------------------------------------

    async def _load_shared_cooldowns(self) -> list[float]:
        if self._store is None:
            return []
        try:
            return await self._store.load()
        except Exception as exc:
            logger.warning("KeyPool | cooldown store read failed (using local state): %s", exc)
            return []

    def _merge_shared_cooldowns(self, shared: Sequence[float], now: float) -> None:
        """Adopt cooldowns set by other instances. Caller holds the lock."""
        for entry, until in zip(self._entries, shared):
            if entry.status is CredentialStatus.DISABLED or until <= entry.cooldown_until:
                continue
            entry.cooldown_until = until
            if until > now:
                entry.status = CredentialStatus.COOLDOWN

    async def _publish_cooldown(self, key_id: int, until: float) -> None:
        """Read-modify-write the shared array. Best-effort, not linearizable."""
        if self._store is None:
            return
        try:
            current = list(await self._store.load())
            if len(current) < self.size:
                current.extend([0.0] * (self.size - len(current)))
            current[key_id] = max(current[key_id], until)
            await self._store.save(current[: self.size])
        except Exception as exc:
            logger.warning("KeyPool | cooldown store write failed key_id=%d: %s", key_id, exc)
