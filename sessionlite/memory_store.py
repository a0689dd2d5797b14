"""
InMemoryBackingStore - Development & Test Backend

Implements the BackingStore interface in process with the same expiry
semantics as Redis:
- Lock striping (16 independent locks)
- Lazy expiry: an expired key is evicted the moment anything accesses it
- Active expiry: optional daemon draining a min-heap of deadlines
- Expiry notifications delivered to registered listeners
"""

import heapq
import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from sessionlite.backing_store import BackingStore, ExpiryListener

logger = logging.getLogger(__name__)


class ManualClock:
    """Clock that only moves when told to. Share one between store and policy."""

    def __init__(self, start: float = 0.0):
        self._now = start
        self._lock = threading.Lock()

    def __call__(self) -> float:
        with self._lock:
            return self._now

    def advance(self, seconds: float) -> float:
        with self._lock:
            self._now += seconds
            return self._now

    def set(self, now: float) -> None:
        with self._lock:
            self._now = now


class InMemoryBackingStore(BackingStore):
    """
    TTL-aware key-value store with set collections.

    The clock is injectable so tests can move time forward; it only has to be
    monotonic non-decreasing, the store never compares it with wall time.
    """

    LOCK_STRIPE_COUNT = 16

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        ttl_check_interval_ms: int = 100,
        notify_on_expiry: bool = True,
    ):
        self._clock = clock
        self.ttl_check_interval = ttl_check_interval_ms / 1000.0
        self.notify_on_expiry = notify_on_expiry

        # Sharded data storage; a value is either a str or a set of str
        self._data: List[Dict[str, Any]] = [{} for _ in range(self.LOCK_STRIPE_COUNT)]
        self._expiry: List[Dict[str, float]] = [{} for _ in range(self.LOCK_STRIPE_COUNT)]
        self._locks: List[threading.RLock] = [
            threading.RLock() for _ in range(self.LOCK_STRIPE_COUNT)
        ]

        # Min-heap for active expiration
        self._expiry_heap: List[Tuple[float, str, int]] = []
        self._heap_lock = threading.RLock()

        self._listeners: List[ExpiryListener] = []

        self._stats = {
            "reads": 0,
            "writes": 0,
            "deletes": 0,
            "expirations": 0,
        }
        self._stats_lock = threading.RLock()

        self._running = False
        self._ttl_daemon: Optional[threading.Thread] = None

    def _get_shard(self, key: str) -> int:
        return hash(key) % self.LOCK_STRIPE_COUNT

    def _count(self, stat: str, amount: int = 1) -> None:
        with self._stats_lock:
            self._stats[stat] += amount

    # ------------------------------------------------------------------
    # Expiry bookkeeping (shard lock must be held)
    # ------------------------------------------------------------------

    def _evict_if_expired(self, shard_id: int, key: str) -> bool:
        """Drop key if its deadline has passed. Returns True if it was evicted."""
        deadline = self._expiry[shard_id].get(key)
        if deadline is None or self._clock() < deadline:
            return False
        self._data[shard_id].pop(key, None)
        self._expiry[shard_id].pop(key, None)
        return True

    def _set_deadline(self, shard_id: int, key: str, ttl_seconds: float) -> None:
        deadline = self._clock() + ttl_seconds
        self._expiry[shard_id][key] = deadline
        with self._heap_lock:
            heapq.heappush(self._expiry_heap, (deadline, key, shard_id))

    def _expired(self, keys: List[str]) -> None:
        """Account for evicted keys and notify listeners (no shard lock held)."""
        if not keys:
            return
        self._count("expirations", len(keys))
        if not self.notify_on_expiry:
            return
        for key in keys:
            for listener in list(self._listeners):
                try:
                    listener(key)
                except Exception:
                    logger.exception("Expiry listener failed for key %s", key)

    def _access(self, key: str) -> Tuple[int, threading.RLock, bool]:
        shard_id = self._get_shard(key)
        lock = self._locks[shard_id]
        with lock:
            evicted = self._evict_if_expired(shard_id, key)
        return shard_id, lock, evicted

    # ------------------------------------------------------------------
    # Plain keys
    # ------------------------------------------------------------------

    def get(self, key: str) -> Optional[str]:
        shard_id, lock, evicted = self._access(key)
        with lock:
            value = self._data[shard_id].get(key)
        self._count("reads")
        self._expired([key] if evicted else [])
        if isinstance(value, set):
            raise TypeError(f"Key {key} holds a set, not a value")
        return value

    def set_with_ttl(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        shard_id = self._get_shard(key)
        with self._locks[shard_id]:
            self._data[shard_id][key] = value
            if ttl_seconds is None:
                self._expiry[shard_id].pop(key, None)
            else:
                self._set_deadline(shard_id, key, ttl_seconds)
        self._count("writes")

    def delete(self, key: str) -> bool:
        shard_id, lock, evicted = self._access(key)
        with lock:
            existed = self._data[shard_id].pop(key, None) is not None
            self._expiry[shard_id].pop(key, None)
        self._count("deletes")
        self._expired([key] if evicted else [])
        return existed

    def exists(self, key: str) -> bool:
        shard_id, lock, evicted = self._access(key)
        with lock:
            present = key in self._data[shard_id]
        self._count("reads")
        self._expired([key] if evicted else [])
        return present

    def expire(self, key: str, ttl_seconds: int) -> bool:
        shard_id, lock, evicted = self._access(key)
        with lock:
            present = key in self._data[shard_id]
            if present:
                self._set_deadline(shard_id, key, ttl_seconds)
        self._count("writes")
        self._expired([key] if evicted else [])
        return present

    def persist(self, key: str) -> bool:
        shard_id, lock, evicted = self._access(key)
        with lock:
            removed = self._expiry[shard_id].pop(key, None) is not None
        self._expired([key] if evicted else [])
        return removed

    def ttl(self, key: str) -> Optional[float]:
        """Remaining TTL in seconds; -1 for no TTL, None if absent."""
        shard_id, lock, evicted = self._access(key)
        with lock:
            if key not in self._data[shard_id]:
                result = None
            elif key not in self._expiry[shard_id]:
                result = -1.0
            else:
                result = max(0.0, self._expiry[shard_id][key] - self._clock())
        self._expired([key] if evicted else [])
        return result

    # ------------------------------------------------------------------
    # Set collections
    # ------------------------------------------------------------------

    def _get_set(self, shard_id: int, key: str, create: bool) -> Optional[Set[str]]:
        members = self._data[shard_id].get(key)
        if members is None:
            if not create:
                return None
            members = set()
            self._data[shard_id][key] = members
        elif not isinstance(members, set):
            raise TypeError(f"Key {key} holds a value, not a set")
        return members

    def set_add(self, collection_key: str, member: str) -> bool:
        shard_id, lock, evicted = self._access(collection_key)
        with lock:
            members = self._get_set(shard_id, collection_key, create=True)
            added = member not in members
            members.add(member)
        self._count("writes")
        self._expired([collection_key] if evicted else [])
        return added

    def set_remove(self, collection_key: str, member: str) -> bool:
        shard_id, lock, evicted = self._access(collection_key)
        with lock:
            members = self._get_set(shard_id, collection_key, create=False)
            removed = False
            if members is not None and member in members:
                members.discard(member)
                removed = True
                # Redis drops empty sets together with their TTL
                if not members:
                    self._data[shard_id].pop(collection_key, None)
                    self._expiry[shard_id].pop(collection_key, None)
        self._count("writes")
        self._expired([collection_key] if evicted else [])
        return removed

    def set_members(self, collection_key: str) -> Set[str]:
        shard_id, lock, evicted = self._access(collection_key)
        with lock:
            members = self._get_set(shard_id, collection_key, create=False)
            result = set(members) if members else set()
        self._count("reads")
        self._expired([collection_key] if evicted else [])
        return result

    def set_expire(self, collection_key: str, ttl_seconds: int) -> bool:
        return self.expire(collection_key, ttl_seconds)

    def delete_collection(self, collection_key: str) -> bool:
        return self.delete(collection_key)

    # ------------------------------------------------------------------
    # Notifications, introspection, lifecycle
    # ------------------------------------------------------------------

    def add_expiry_listener(self, listener: ExpiryListener) -> None:
        self._listeners.append(listener)

    def keys(self) -> List[str]:
        """Snapshot of keys that are present and not past their deadline."""
        now = self._clock()
        result = []
        for shard_id in range(self.LOCK_STRIPE_COUNT):
            with self._locks[shard_id]:
                for key in self._data[shard_id]:
                    deadline = self._expiry[shard_id].get(key)
                    if deadline is None or now < deadline:
                        result.append(key)
        return result

    def get_stats(self) -> Dict[str, Any]:
        with self._stats_lock:
            stats = dict(self._stats)
        stats["keys"] = len(self.keys())
        return stats

    def purge_expired(self) -> int:
        """Active expiry pass: evict every key whose deadline has passed."""
        current_time = self._clock()
        evicted: List[str] = []

        # Writers take a shard lock before the heap lock, so the heap lock is
        # released before any shard lock is taken here.
        due = []
        with self._heap_lock:
            while self._expiry_heap and self._expiry_heap[0][0] <= current_time:
                due.append(heapq.heappop(self._expiry_heap))

        for deadline, key, shard_id in due:
            # Stale heap entries are skipped: the key may have been
            # deleted or given a new deadline since it was pushed.
            with self._locks[shard_id]:
                if self._expiry[shard_id].get(key) == deadline:
                    self._data[shard_id].pop(key, None)
                    self._expiry[shard_id].pop(key, None)
                    evicted.append(key)

        self._expired(evicted)
        return len(evicted)

    def _ttl_daemon_loop(self) -> None:
        while self._running:
            try:
                self.purge_expired()
            except Exception:
                logger.exception("Active expiry pass failed")
            time.sleep(self.ttl_check_interval)

    def start(self) -> None:
        """Start the active-expiry daemon thread."""
        if self._running:
            return
        self._running = True
        self._ttl_daemon = threading.Thread(
            target=self._ttl_daemon_loop,
            name="SessionLite-MemoryStore-TTL",
            daemon=True,
        )
        self._ttl_daemon.start()

    def close(self) -> None:
        self._running = False
        if self._ttl_daemon:
            self._ttl_daemon.join(timeout=5)
            self._ttl_daemon = None
