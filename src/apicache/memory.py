"""Bounded in-memory cache tier with LRU eviction and per-entry expiration.

:class:`MemoryStore` is generic over a hashable key and an arbitrary value.
Every operation runs under one :class:`threading.RLock`, so a store can be
shared between threads without external locking and no two operations ever
interleave their bookkeeping.

Expiration is lazy: reads first purge every expired entry, then answer.
Capacity is enforced on write by evicting the least recently used entry
(reads and writes both count as a use; ties fall back to insertion order).
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Generic, Hashable, Optional, TypeVar

from apicache.exceptions import CacheExpiredError, RecordNotFoundError
from apicache.models import Expiration

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")

_MISSING = object()


@dataclass
class _Entry(Generic[V]):
    value: V
    created_at: float
    expires_at: Optional[float]

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at


class MemoryStore(Generic[K, V]):
    """Thread-safe LRU + TTL map.

    Args:
        max_size: Maximum number of entries kept. Must be at least 1.
        default_expiration: Expiration applied by :meth:`set` when none is
            given. ``None`` means entries never expire.
        clock: Returns the current time in epoch seconds.

    Example::

        store: MemoryStore[CacheKey, bytes] = MemoryStore(max_size=2)
        store.set(CacheKey("/a"), b"1", Expiration.after(60))
        store.get(CacheKey("/a"))   # b"1"
    """

    def __init__(
        self,
        max_size: int = 100,
        default_expiration: Optional[Expiration] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if max_size < 1:
            raise ValueError(f"max_size must be at least 1, got {max_size}")
        self._max_size = max_size
        self._default_expiration = default_expiration
        self._clock = clock
        self._entries: OrderedDict[K, _Entry[V]] = OrderedDict()
        self._lock = threading.RLock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._expirations = 0

    @property
    def max_size(self) -> int:
        return self._max_size

    # ------------------------------------------------------------------ #
    # Reads
    # ------------------------------------------------------------------ #

    def get(self, key: K) -> Optional[V]:
        """Return the live value for *key*, or ``None`` if it is absent or expired.

        A hit is promoted to most recently used. An expired entry is removed.
        """
        try:
            return self.lookup(key)
        except (RecordNotFoundError, CacheExpiredError):
            return None

    def lookup(self, key: K) -> V:
        """Like :meth:`get`, but tells a missing entry from an expired one.

        Raises:
            RecordNotFoundError: No entry exists for *key*.
            CacheExpiredError: The entry existed but was stale. It has been
                removed; its value is on ``stale_value``.
        """
        with self._lock:
            now = self._clock()
            entry = self._entries.get(key)
            self._purge_expired(now)
            if entry is None:
                self._misses += 1
                raise RecordNotFoundError(f"No cached entry for {key}")
            if entry.is_expired(now):
                self._misses += 1
                raise CacheExpiredError(
                    f"Cached entry for {key} expired",
                    stale_value=entry.value,
                    expired_at=entry.expires_at,
                )
            self._entries.move_to_end(key)
            self._hits += 1
            return entry.value

    def peek(self, key: K, include_expired: bool = True) -> Optional[V]:
        """Read *key* without promoting it or purging anything.

        With *include_expired* (the default) a stale entry that has not been
        purged yet is still returned; this is the stale-fallback read.
        """
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if not include_expired and entry.is_expired(self._clock()):
                return None
            return entry.value

    def contains(self, key: K) -> bool:
        """Return True if *key* holds a live entry. Does not promote it."""
        with self._lock:
            self._purge_expired(self._clock())
            return key in self._entries

    def __contains__(self, key: object) -> bool:
        return self.contains(key)  # type: ignore[arg-type]

    @property
    def count(self) -> int:
        """Number of live entries."""
        with self._lock:
            self._purge_expired(self._clock())
            return len(self._entries)

    def __len__(self) -> int:
        return self.count

    @property
    def is_empty(self) -> bool:
        return self.count == 0

    # ------------------------------------------------------------------ #
    # Writes
    # ------------------------------------------------------------------ #

    def set(self, key: K, value: V, expiration: Optional[Expiration] = None) -> None:
        """Insert or replace *key*, mark it most recently used and enforce capacity.

        When the store is over capacity, expired entries are reclaimed first;
        live entries are then evicted least recently used first.
        """
        if expiration is None:
            expiration = self._default_expiration
        with self._lock:
            now = self._clock()
            expires_at = expiration.resolve(now) if expiration is not None else None
            self._entries[key] = _Entry(value=value, created_at=now, expires_at=expires_at)
            self._entries.move_to_end(key)
            if len(self._entries) > self._max_size:
                self._purge_expired(now)
            while len(self._entries) > self._max_size:
                evicted, _ = self._entries.popitem(last=False)
                self._evictions += 1
                logger.debug("Evicted least recently used entry %s", evicted)

    def remove(self, key: K) -> bool:
        """Remove *key*. Returns True if an entry was removed."""
        with self._lock:
            return self._entries.pop(key, _MISSING) is not _MISSING

    def clear(self) -> None:
        """Remove every entry. Safe to call repeatedly."""
        with self._lock:
            self._entries.clear()

    def stats(self) -> dict[str, Any]:
        """Return size, capacity and hit/miss/eviction/expiration counters."""
        with self._lock:
            return {
                "size": len(self._entries),
                "max_size": self._max_size,
                "hits": self._hits,
                "misses": self._misses,
                "evictions": self._evictions,
                "expirations": self._expirations,
            }

    def _purge_expired(self, now: float) -> None:
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            del self._entries[key]
        if expired:
            self._expirations += len(expired)
            logger.debug("Purged %d expired memory entries", len(expired))
