"""
ratelimit.py — Fixed-window request counters per route category
================================================================
A classic fixed-window counter keyed by an identifier such as
``"contact:203.0.113.7"``:

  * no entry, or the stored window has elapsed → start a new window with
    ``count = 1`` and allow;
  * ``count >= max_requests`` → deny until the window resets (optionally
    re-stamping the entry as *blocked* for an extended lockout);
  * otherwise increment and allow.

Fixed windows let up to ``2 * max_requests`` through in a short burst that
straddles a window boundary. That is accepted: the goal is abuse dampening,
not metering.

State lives behind :class:`RateLimitStore`. The in-memory store is
process-local, so every instance of the service counts on its own and a
restart forgets everything. For multi-instance deployments point
``CIVICSITE_RATE_LIMIT_BACKEND`` at ``redis``.
"""
from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass, replace
from typing import Callable, Dict, Optional, Protocol

import redis

from ..config import Settings, settings

logger = logging.getLogger("civicsite.ratelimit")


# ---------------------------------------------------------------------------
# Value types
# ---------------------------------------------------------------------------

@dataclass
class RateLimitEntry:
    count: int
    reset_at: float          # epoch seconds
    blocked: bool = False


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_in: float          # seconds until the window (or block) ends
    blocked: bool = False

    @property
    def retry_after(self) -> int:
        """Whole seconds for the ``Retry-After`` header."""
        return max(1, math.ceil(self.reset_in))


@dataclass(frozen=True)
class RateLimitPolicy:
    max_requests: int
    window: float                 # seconds
    block_duration: float = 0.0   # seconds of extended lockout, 0 = none


RATE_LIMITS: Dict[str, RateLimitPolicy] = {
    "auth": RateLimitPolicy(max_requests=5, window=60),
    "contact": RateLimitPolicy(max_requests=5, window=60 * 60),
    "admin": RateLimitPolicy(max_requests=60, window=60),
    "public": RateLimitPolicy(max_requests=100, window=60),
    "international_join": RateLimitPolicy(max_requests=2, window=60 * 60, block_duration=60 * 60),
    "recruitment": RateLimitPolicy(max_requests=5, window=30 * 60),
    "analytics": RateLimitPolicy(max_requests=30, window=60),
}


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------

class RateLimitStore(Protocol):
    def get(self, key: str, now: float) -> Optional[RateLimitEntry]:
        """Live entry for ``key``; expired entries are reported as absent."""

    def set(self, key: str, entry: RateLimitEntry) -> None:
        """Replace the entry for ``key``."""

    def increment(self, key: str) -> int:
        """Bump the counter of a live entry and return the new count."""

    def delete(self, key: str) -> None:
        """Forget one key."""

    def sweep(self, now: float) -> int:
        """Drop expired entries, returning how many were removed."""

    def clear(self) -> None:
        """Forget everything."""


class InMemoryRateLimitStore:
    """Process-local store. Safe to share between threads."""

    def __init__(self) -> None:
        self._entries: Dict[str, RateLimitEntry] = {}
        self._lock = threading.Lock()

    def get(self, key: str, now: float) -> Optional[RateLimitEntry]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or now >= entry.reset_at:
                return None
            return replace(entry)

    def set(self, key: str, entry: RateLimitEntry) -> None:
        with self._lock:
            self._entries[key] = replace(entry)

    def increment(self, key: str) -> int:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                raise KeyError(key)
            entry.count += 1
            return entry.count

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def sweep(self, now: float) -> int:
        with self._lock:
            expired = [k for k, e in self._entries.items() if now >= e.reset_at]
            for k in expired:
                del self._entries[k]
            return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class RedisRateLimitStore:
    """Shared store: one hash per key, expired by Redis itself."""

    def __init__(self, client: "redis.Redis", prefix: str = "civicsite:ratelimit:") -> None:
        self._client = client
        self._prefix = prefix

    @classmethod
    def from_url(cls, url: str) -> "RedisRateLimitStore":
        return cls(redis.Redis.from_url(url))

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    @staticmethod
    def _text(value) -> str:
        return value.decode() if isinstance(value, bytes) else str(value)

    def get(self, key: str, now: float) -> Optional[RateLimitEntry]:
        raw = self._client.hgetall(self._key(key))
        if not raw:
            return None
        data = {self._text(k): self._text(v) for k, v in raw.items()}
        entry = RateLimitEntry(
            count=int(data.get("count", 0)),
            reset_at=float(data.get("reset_at", 0)),
            blocked=data.get("blocked") == "1",
        )
        if now >= entry.reset_at:
            return None
        return entry

    def set(self, key: str, entry: RateLimitEntry) -> None:
        name = self._key(key)
        pipe = self._client.pipeline()
        pipe.hset(name, mapping={
            "count": entry.count,
            "reset_at": repr(entry.reset_at),
            "blocked": "1" if entry.blocked else "0",
        })
        pipe.pexpireat(name, int(math.ceil(entry.reset_at * 1000)))
        pipe.execute()

    def increment(self, key: str) -> int:
        return int(self._client.hincrby(self._key(key), "count", 1))

    def delete(self, key: str) -> None:
        self._client.delete(self._key(key))

    def sweep(self, now: float) -> int:
        # Redis expires keys on its own.
        return 0

    def clear(self) -> None:
        for name in self._client.scan_iter(match=f"{self._prefix}*"):
            self._client.delete(name)


def build_store(cfg: Settings) -> RateLimitStore:
    if cfg.rate_limit_backend == "redis":
        logger.info("Rate limiting backed by Redis at %s", cfg.redis_url)
        return RedisRateLimitStore.from_url(cfg.redis_url)
    if cfg.is_production:
        logger.warning(
            "Rate limiting uses the in-memory store; limits are per process "
            "and reset on restart. Set CIVICSITE_RATE_LIMIT_BACKEND=redis for "
            "multi-instance deployments."
        )
    return InMemoryRateLimitStore()


# ---------------------------------------------------------------------------
# Limiter
# ---------------------------------------------------------------------------

class FixedWindowRateLimiter:
    def __init__(
        self,
        store: Optional[RateLimitStore] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store: RateLimitStore = store if store is not None else InMemoryRateLimitStore()
        self.clock = clock
        # get → decide → write must not interleave between threads
        self._lock = threading.Lock()

    def check(
        self,
        identifier: str,
        max_requests: int,
        window: float,
        block_duration: float = 0.0,
    ) -> RateLimitResult:
        with self._lock:
            now = self.clock()
            entry = self.store.get(identifier, now)

            if entry is None:
                self.store.set(identifier, RateLimitEntry(count=1, reset_at=now + window))
                return RateLimitResult(allowed=True, remaining=max_requests - 1, reset_in=window)

            if entry.blocked:
                return RateLimitResult(
                    allowed=False, remaining=0, reset_in=entry.reset_at - now, blocked=True,
                )

            if entry.count >= max_requests:
                if block_duration > 0:
                    entry = RateLimitEntry(
                        count=entry.count, reset_at=now + block_duration, blocked=True,
                    )
                    self.store.set(identifier, entry)
                    logger.warning(
                        "Rate limit lockout for %s (%.0fs)", identifier, block_duration,
                        extra={"identifier": identifier, "block_seconds": block_duration},
                    )
                return RateLimitResult(
                    allowed=False,
                    remaining=0,
                    reset_in=entry.reset_at - now,
                    blocked=entry.blocked,
                )

            count = self.store.increment(identifier)
            return RateLimitResult(
                allowed=True,
                remaining=max(0, max_requests - count),
                reset_in=entry.reset_at - now,
            )

    def hit(self, category: str, client_id: str) -> RateLimitResult:
        """Check the configured policy of ``category`` for one client."""
        policy = RATE_LIMITS[category]
        return self.check(
            f"{category}:{client_id}",
            policy.max_requests,
            policy.window,
            policy.block_duration,
        )

    def sweep(self) -> int:
        with self._lock:
            removed = self.store.sweep(self.clock())
        if removed:
            logger.debug("Rate limit sweep removed %d expired entries", removed)
        return removed

    def reset(self) -> None:
        with self._lock:
            self.store.clear()


# Module-level singleton used by the admission middleware
rate_limiter = FixedWindowRateLimiter(build_store(settings))
