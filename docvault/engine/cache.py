"""
DocVault Cache Layer — Keyed TTL caches with in-flight request coalescing.

Scopes and default TTLs (docvault.yaml → cache.ttl):
  companies:    company folder listing          (15 min)
  employees:    per-company employee folders    (10 min)
  company_rows: per-company raw document rows   (5 min)
  documents:    per-employee documents          (5 min)
  presigned:    per-document presigned URL      (10 min)

Each TTLCache guarantees at most one running compute() per key: concurrent
callers for the same key share one asyncio.Task. The check-cache /
check-in-flight / register-in-flight sequence contains no await, so it is
atomic on a single event loop. A multi-threaded caller must wrap it in a lock.

Cache state is process-local and always reconstructible from the
relational store and object storage.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Generic, Hashable, Optional, TypeVar

from docvault.engine.config import CacheConfig

logger = logging.getLogger("docvault.engine.cache")

T = TypeVar("T")

Clock = Callable[[], float]


def system_clock() -> float:
    """Wall clock in epoch milliseconds."""
    return time.time() * 1000.0


class CacheScope(str, Enum):
    COMPANIES = "companies"
    EMPLOYEES = "employees"
    COMPANY_ROWS = "company_rows"
    DOCUMENTS = "documents"
    PRESIGNED = "presigned"


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    value: T
    timestamp: float  # epoch millis


class TTLCache(Generic[T]):
    """
    One keyed cache with a fixed TTL and in-flight de-duplication.

    Errors from compute() are never cached and always propagate to every
    waiting caller. The in-flight marker is removed on settlement whatever
    the outcome, so the next call after a failure starts a fresh compute.
    """

    def __init__(self, name: str, ttl_ms: float, clock: Clock = system_clock):
        self.name = name
        self._ttl_ms = ttl_ms
        self._clock = clock
        self._entries: Dict[Hashable, CacheEntry[T]] = {}
        self._inflight: Dict[Hashable, asyncio.Task] = {}
        self._hits = 0
        self._misses = 0
        self._coalesced = 0

    @property
    def ttl_ms(self) -> float:
        return self._ttl_ms

    def _is_fresh(self, entry: CacheEntry[T]) -> bool:
        return self._clock() - entry.timestamp < self._ttl_ms

    # ── Core Operations ──

    def get(self, key: Hashable) -> Optional[T]:
        """Return the cached value if still valid, else None."""
        entry = self._entries.get(key)
        if entry is not None and self._is_fresh(entry):
            return entry.value
        return None

    def peek(self, key: Hashable) -> Optional[CacheEntry[T]]:
        """Return the entry regardless of age (used for degraded fallbacks)."""
        return self._entries.get(key)

    def set(self, key: Hashable, value: T, timestamp: Optional[float] = None) -> None:
        """Store value; timestamp lets a copied entry keep its original age."""
        stamp = self._clock() if timestamp is None else timestamp
        self._entries[key] = CacheEntry(value=value, timestamp=stamp)

    def is_inflight(self, key: Hashable) -> bool:
        return key in self._inflight

    async def get_or_compute(
        self,
        key: Hashable,
        compute: Callable[[], Awaitable[T]],
    ) -> T:
        """
        Return the valid cached value for key, join the in-flight compute
        for key, or start compute() and share it with later callers.
        """
        entry = self._entries.get(key)
        if entry is not None and self._is_fresh(entry):
            self._hits += 1
            return entry.value

        task = self._inflight.get(key)
        if task is not None:
            self._coalesced += 1
            logger.debug(f"Cache '{self.name}' joined in-flight compute for {key!r}")
        else:
            self._misses += 1
            task = asyncio.get_running_loop().create_task(self._run(key, compute))
            self._inflight[key] = task
            task.add_done_callback(lambda t: self._settle(key, t))

        # shield: a cancelled caller stops waiting, the shared compute keeps going
        return await asyncio.shield(task)

    async def _run(self, key: Hashable, compute: Callable[[], Awaitable[T]]) -> T:
        before = self._entries.get(key)
        value = await compute()
        # Only store if nobody invalidated this key while we were computing
        if self._inflight.get(key) is asyncio.current_task():
            if self._entries.get(key) is before:
                self._entries[key] = CacheEntry(value=value, timestamp=self._clock())
            # else compute stored its own entry via set(); keep its timestamp
        else:
            logger.debug(f"Cache '{self.name}' discarded result for invalidated key {key!r}")
        return value

    def _settle(self, key: Hashable, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        if not task.cancelled() and task.exception() is not None:
            logger.debug(f"Cache '{self.name}' compute failed for {key!r}: {task.exception()}")

    # ── Invalidation ──

    def invalidate(self, key: Optional[Hashable] = None) -> int:
        """
        Drop one key (or every key when key is None) and its in-flight marker.
        A compute already running for a dropped key still resolves for its
        waiters but its result is not stored.

        Returns the number of cached entries removed.
        """
        if key is None:
            removed = len(self._entries)
            self._entries.clear()
            self._inflight.clear()
            return removed
        self._inflight.pop(key, None)
        return 1 if self._entries.pop(key, None) is not None else 0

    def clear(self) -> None:
        self.invalidate()
        self._hits = self._misses = self._coalesced = 0

    def stats(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "entries": len(self._entries),
            "inflight": len(self._inflight),
            "hits": self._hits,
            "misses": self._misses,
            "coalesced": self._coalesced,
            "ttl_ms": self._ttl_ms,
        }

    def __len__(self) -> int:
        return len(self._entries)


class CacheManager:
    """
    Owns one TTLCache per CacheScope.

    Constructed once per process and passed to the services that need it,
    with an injectable clock so expiry can be tested deterministically.
    """

    def __init__(self, config: Optional[CacheConfig] = None, clock: Clock = system_clock):
        self._config = config or CacheConfig()
        self._clock = clock
        ttl = self._config.ttl
        self._caches: Dict[CacheScope, TTLCache] = {
            CacheScope.COMPANIES: TTLCache("companies", ttl.companies * 1000.0, clock),
            CacheScope.EMPLOYEES: TTLCache("employees", ttl.employees * 1000.0, clock),
            CacheScope.COMPANY_ROWS: TTLCache("company_rows", ttl.company_rows * 1000.0, clock),
            CacheScope.DOCUMENTS: TTLCache("documents", ttl.documents * 1000.0, clock),
            CacheScope.PRESIGNED: TTLCache("presigned", ttl.presigned * 1000.0, clock),
        }

    @property
    def clock(self) -> Clock:
        return self._clock

    def cache(self, scope: CacheScope | str) -> TTLCache:
        return self._caches[CacheScope(scope)]

    def invalidate(self, scope: CacheScope | str, key: Optional[Hashable] = None) -> int:
        """Remove one key, or every key under scope when key is None."""
        removed = self.cache(scope).invalidate(key)
        logger.info(
            f"Invalidated {CacheScope(scope).value}"
            f"{'' if key is None else f'[{key}]'} ({removed} entries)"
        )
        return removed

    def clear(self) -> None:
        """Clear every scope (manual refresh, test reset)."""
        for cache in self._caches.values():
            cache.clear()
        logger.info("All document caches cleared")

    def stats(self) -> Dict[str, Dict[str, Any]]:
        return {scope.value: cache.stats() for scope, cache in self._caches.items()}
