"""
Artifact cache with single-flight computation.

Entries are write-once: the first value stored under a key wins and is never
replaced. ``compute_if_absent`` guarantees at most one running producer per
key; concurrent callers for the same key block on the owner's Future instead
of repeating the provider call.

Locking: ``_lock`` guards the in-memory map and the in-flight table only.
It is never held while a producer runs or while a caller waits.
"""

import logging
import threading
import time
from collections import OrderedDict
from concurrent.futures import Future, TimeoutError as FutureTimeout
from typing import Any, Callable

from coursegen.core.constants import DEFAULT_CACHE_CAPACITY, DEFAULT_CACHE_TTL_SEC
from coursegen.core.error_codes import CacheProducerFailed, TransientProviderError
from coursegen.core.models_sqlite import CacheEntry

logger = logging.getLogger(__name__)


class ArtifactCache:

    def __init__(self, db=None, ttl_sec: float = DEFAULT_CACHE_TTL_SEC,
                 capacity: int = DEFAULT_CACHE_CAPACITY, wait_sec: float = 0,
                 clock=time.time):
        self.db = db
        self.ttl_sec = ttl_sec
        self.capacity = capacity
        self.wait_sec = wait_sec
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._inflight: dict[str, Future] = {}
        self.hits = 0
        self.misses = 0
        self.producer_calls = 0

    # ── Lookup ────────────────────────────────────────────────────────

    def _expired(self, entry: CacheEntry) -> bool:
        return bool(self.ttl_sec) and self._clock() - entry.created_at >= self.ttl_sec

    def _remember(self, entry: CacheEntry):
        """Caller holds _lock."""
        self._entries[entry.key] = entry
        self._entries.move_to_end(entry.key)
        while len(self._entries) > self.capacity:
            self._entries.popitem(last=False)

    def _lookup(self, key: str) -> CacheEntry | None:
        """Caller holds _lock. Memory first, then the durable store."""
        entry = self._entries.get(key)
        if entry is None and self.db is not None:
            entry = self.db.get_cache_entry(key)
            if entry is not None and not self._expired(entry):
                self._remember(entry)
        if entry is None:
            return None
        if self._expired(entry):
            self._drop(key)
            return None
        self._entries.move_to_end(key)
        return entry

    def _drop(self, key: str):
        self._entries.pop(key, None)
        if self.db is not None:
            self.db.delete_cache_entry(key)

    def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._lookup(key)
            if entry is None:
                self.misses += 1
                return None
            self.hits += 1
            return entry.artifact

    def contains(self, key: str) -> bool:
        with self._lock:
            return self._lookup(key) is not None

    # ── Single-flight compute ─────────────────────────────────────────

    def compute_if_absent(self, key: str, producer: Callable[[], Any],
                          stage: str | None = None) -> Any:
        """
        Return the cached artifact for ``key``, computing it with ``producer``
        if needed. The owner sees the producer's own exception; callers that
        waited on it get CacheProducerFailed wrapping that exception.
        """
        with self._lock:
            entry = self._lookup(key)
            if entry is not None:
                self.hits += 1
                return entry.artifact
            future = self._inflight.get(key)
            owner = future is None
            if owner:
                future = Future()
                self._inflight[key] = future
                self.producer_calls += 1

        if not owner:
            logger.debug("Waiting on in-flight computation %s", key[:12])
            return self._wait(key, future)

        # Any failure up to and including the store must resolve the future,
        # or later callers for this key would wait on it forever.
        try:
            artifact = producer()
            entry = CacheEntry(key=key, stage=stage, artifact=artifact, created_at=self._clock())
            with self._lock:
                if self._entries.get(key) is None:
                    if self.db is not None:
                        self.db.put_cache_entry(entry)
                    self._remember(entry)
                self._inflight.pop(key, None)
        except BaseException as e:
            with self._lock:
                self._inflight.pop(key, None)
            future.set_exception(e)
            raise

        future.set_result(artifact)
        return artifact

    def _wait(self, key: str, future: Future) -> Any:
        try:
            return future.result(timeout=self.wait_sec or None)
        except FutureTimeout:
            raise TransientProviderError(
                f"Timed out after {self.wait_sec:g}s waiting for in-flight computation {key[:12]}"
            )
        except Exception as e:
            raise CacheProducerFailed(key, e) from e

    # ── Eviction ──────────────────────────────────────────────────────

    def put(self, key: str, artifact: Any, stage: str | None = None) -> bool:
        """Insert if absent. Returns False when the key already held a value."""
        entry = CacheEntry(key=key, stage=stage, artifact=artifact, created_at=self._clock())
        with self._lock:
            if self._lookup(key) is not None:
                return False
            if self.db is not None:
                self.db.put_cache_entry(entry)
            self._remember(entry)
            return True

    def evict(self, key: str) -> bool:
        with self._lock:
            present = key in self._entries
            self._entries.pop(key, None)
            if self.db is not None:
                present = self.db.delete_cache_entry(key) or present
            return present

    def purge_expired(self) -> int:
        if not self.ttl_sec:
            return 0
        cutoff = self._clock() - self.ttl_sec
        with self._lock:
            stale = [k for k, e in self._entries.items() if e.created_at < cutoff]
            for key in stale:
                del self._entries[key]
            removed = len(stale)
            if self.db is not None:
                removed = max(removed, self.db.delete_cache_entries_before(cutoff))
        if removed:
            logger.info("Purged %d expired cache entries", removed)
        return removed

    def stats(self) -> dict:
        with self._lock:
            return {
                'entries_in_memory': len(self._entries),
                'in_flight': len(self._inflight),
                'hits': self.hits,
                'misses': self.misses,
                'producer_calls': self.producer_calls,
            }
