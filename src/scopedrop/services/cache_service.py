from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Hashable, Optional

from scopedrop.utils.error_monitoring import ResilienceError


class ComputeError(ResilienceError):
    """A cached derivation failed. Never memoized."""

    def __init__(self, key: Hashable, cause: BaseException):
        super().__init__(f"Computation for {key!r} failed: {type(cause).__name__}: {cause}")
        self.key = key
        self.cause = cause


@dataclass
class CacheEntry:
    """A stored value and the monotonic time it stops being served"""
    key: Hashable
    value: Any
    expires_at: Optional[float] = None

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    shared_waits: int = 0
    failures: int = 0
    size: int = 0
    in_flight: int = 0


class SingleFlightCache:
    """
    Keyed memoization with request deduplication.

    At most one computation runs per key. Callers that arrive while it is in
    flight await the same task and observe the same value or the same
    ComputeError. Failures are never stored.
    """

    def __init__(
        self,
        default_ttl: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: Dict[Hashable, CacheEntry] = {}
        self._in_flight: Dict[Hashable, asyncio.Task] = {}
        self._stats = CacheStats()
        self.logger = logging.getLogger(__name__)

    async def get_or_compute(
        self,
        key: Hashable,
        compute: Callable[[], Awaitable[Any]],
        ttl: Optional[float] = None,
    ) -> Any:
        entry = self._live_entry(key)
        if entry is not None:
            self._stats.hits += 1
            return entry.value

        task = self._in_flight.get(key)
        if task is not None:
            self._stats.shared_waits += 1
            self.logger.debug(f"Joining in-flight computation for {key!r}")
        else:
            self._stats.misses += 1
            effective_ttl = ttl if ttl is not None else self.default_ttl
            task = asyncio.ensure_future(self._run(key, compute, effective_ttl))
            task.add_done_callback(_consume_exception)
            self._in_flight[key] = task

        # shield: a cancelled caller must not cancel the shared computation
        return await asyncio.shield(task)

    async def _run(self, key: Hashable, compute: Callable[[], Awaitable[Any]], ttl: Optional[float]) -> Any:
        me = asyncio.current_task()
        try:
            value = await compute()
        except Exception as e:
            self._stats.failures += 1
            self.logger.warning(f"Computation for {key!r} failed: {e}")
            if isinstance(e, ComputeError):
                raise
            raise ComputeError(key, e) from e
        finally:
            if self._in_flight.get(key) is me:
                del self._in_flight[key]
                owner = True
            else:
                # invalidated while running
                owner = False

        if owner:
            expires_at = self._clock() + ttl if ttl is not None else None
            self._entries[key] = CacheEntry(key=key, value=value, expires_at=expires_at)
        return value

    def _live_entry(self, key: Hashable) -> Optional[CacheEntry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.is_expired(self._clock()):
            del self._entries[key]
            return None
        return entry

    def get(self, key: Hashable, default: Any = None) -> Any:
        """Return a live stored value without computing anything."""
        entry = self._live_entry(key)
        return entry.value if entry is not None else default

    def has(self, key: Hashable) -> bool:
        return self._live_entry(key) is not None

    def is_in_flight(self, key: Hashable) -> bool:
        return key in self._in_flight

    def invalidate(self, key: Hashable) -> bool:
        """
        Forget `key` for future lookups.

        Callers already awaiting an in-flight computation still receive its
        result; the result is simply not stored.
        """
        removed_entry = self._entries.pop(key, None) is not None
        removed_task = self._in_flight.pop(key, None) is not None
        return removed_entry or removed_task

    def clear(self, prefix: Optional[str] = None) -> int:
        """Invalidate every key, or only string keys starting with `prefix`."""
        keys = set(self._entries) | set(self._in_flight)
        if prefix is not None:
            keys = {k for k in keys if isinstance(k, str) and k.startswith(prefix)}
        for k in keys:
            self.invalidate(k)
        if keys:
            self.logger.info(f"Cleared {len(keys)} cache keys" + (f" matching '{prefix}'" if prefix else ""))
        return len(keys)

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [k for k, e in self._entries.items() if e.is_expired(now)]
        for k in expired:
            del self._entries[k]
        return len(expired)

    def stats(self) -> CacheStats:
        return CacheStats(
            hits=self._stats.hits,
            misses=self._stats.misses,
            shared_waits=self._stats.shared_waits,
            failures=self._stats.failures,
            size=len(self._entries),
            in_flight=len(self._in_flight),
        )

    def __len__(self) -> int:
        return len(self._entries)


def _consume_exception(task: asyncio.Task) -> None:
    # Every awaiting caller sees the failure; this only silences the
    # "exception was never retrieved" warning when all of them were cancelled.
    if not task.cancelled():
        task.exception()
