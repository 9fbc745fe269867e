from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Hashable

from ..metrics import metrics

logger = logging.getLogger(__name__)


@dataclass
class _Entry:
    value: Any
    expires_at: float


@dataclass
class _InFlight:
    done: threading.Event = field(default_factory=threading.Event)
    value: Any = None
    error: BaseException | None = None
    detached: bool = False


class LookupCache:
    """Process-wide TTL cache with single-flight loading.

    Concurrent callers asking for the same missing key wait on one loader
    call and share its result or its exception. Failed loads are not cached.
    Invalidation drops stored entries and detaches in-flight loads, so a
    load that started before the invalidation never repopulates the key.
    """

    def __init__(
        self,
        namespace: str = "lookup",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._namespace = namespace
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[Hashable, _Entry] = {}
        self._in_flight: Dict[Hashable, _InFlight] = {}

    def get_or_load(self, key: Hashable, loader: Callable[[], Any], ttl: float) -> Any:
        counters = metrics.cache(self._namespace)
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry.expires_at > self._clock():
                counters.hits += 1
                return entry.value
            if entry is not None:
                del self._entries[key]
            counters.misses += 1
            flight = self._in_flight.get(key)
            owner = flight is None
            if flight is None:
                flight = _InFlight()
                self._in_flight[key] = flight

        if not owner:
            flight.done.wait()
            if flight.error is not None:
                raise flight.error
            return flight.value

        try:
            counters.loads += 1
            value = loader()
        except BaseException as exc:
            counters.load_failures += 1
            logger.warning(
                "lookup_cache_load_failed",
                exc_info=True,
                extra={"namespace": self._namespace, "key": repr(key)},
            )
            flight.error = exc
            with self._lock:
                if self._in_flight.get(key) is flight:
                    del self._in_flight[key]
            flight.done.set()
            raise

        flight.value = value
        with self._lock:
            if self._in_flight.get(key) is flight:
                del self._in_flight[key]
            if not flight.detached:
                now = self._clock()
                self._evict_expired(now, counters)
                self._entries[key] = _Entry(value=value, expires_at=now + ttl)
        flight.done.set()
        return value

    def _evict_expired(self, now: float, counters) -> None:
        # Caller holds the lock. Keys that are never asked for again still go.
        expired = [k for k, entry in self._entries.items() if entry.expires_at <= now]
        for k in expired:
            del self._entries[k]
        counters.evictions += len(expired)

    def invalidate(self, key: Hashable) -> None:
        with self._lock:
            self._entries.pop(key, None)
            flight = self._in_flight.pop(key, None)
            if flight is not None:
                flight.detached = True
            metrics.cache(self._namespace).invalidations += 1

    def invalidate_all(self) -> None:
        with self._lock:
            self._entries.clear()
            for flight in self._in_flight.values():
                flight.detached = True
            self._in_flight.clear()
            metrics.cache(self._namespace).invalidations += 1

    def __contains__(self, key: Hashable) -> bool:
        with self._lock:
            entry = self._entries.get(key)
            return entry is not None and entry.expires_at > self._clock()


stage_lookup_cache = LookupCache(namespace="stage_lookup")
