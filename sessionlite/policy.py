"""
Expiration Policy - Dual Expiration for Sliding-TTL Records

The store cannot be trusted to announce an expired key at a predictable
time: Redis evicts lazily on access and samples the rest in the background,
so an expired event may be late by minutes. Two mechanisms run side by side:

1. Active: each record's pending-expiry key is filed in an expiration bucket
   named after its expiry rounded up to the next minute. A scheduled sweep
   reads the bucket for the previous minute and touches every member, which
   makes the store evict (and announce) it now.

2. Passive: every key the policy writes carries its own TTL. Live keys and
   buckets get the safety margin on top, so if sweeps stop entirely the
   store still removes everything on its own.

All bucket membership lives in the backing store; nothing is cached here.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Optional

from sessionlite.backing_store import BackingStore
from sessionlite.keys import (
    KeyNaming,
    round_down_minute,
    round_up_to_next_minute,
    seconds_until,
    to_millis,
)
from sessionlite.metrics import MetricsCollector
from sessionlite.record import Record

logger = logging.getLogger(__name__)


DEFAULT_SAFETY_MARGIN_SECS = 300


@dataclass
class SweepResult:
    """Outcome of sweeping one expiration bucket."""
    bucket_ms: int
    members: List[str] = field(default_factory=list)
    touched: int = 0
    still_present: int = 0
    timed_out: bool = False
    elapsed_ms: float = 0.0

    def to_dict(self) -> dict:
        return {
            "bucket_ms": self.bucket_ms,
            "members": len(self.members),
            "touched": self.touched,
            "still_present": self.still_present,
            "timed_out": self.timed_out,
            "elapsed_ms": round(self.elapsed_ms, 3),
        }


class ExpirationPolicy:
    """
    Keeps the expiration index consistent with each record's current expiry
    and reconciles one bucket per sweep.

    Mutation methods are safe to call concurrently for different records;
    calls for the same record must be serialized by the caller.
    Store failures propagate as StoreUnavailableError.
    """

    def __init__(
        self,
        store: BackingStore,
        keys: Optional[KeyNaming] = None,
        safety_margin_secs: int = DEFAULT_SAFETY_MARGIN_SECS,
        clock: Callable[[], float] = time.time,
        metrics: Optional[MetricsCollector] = None,
    ):
        if safety_margin_secs < 0:
            raise ValueError(f"safety_margin_secs cannot be negative: {safety_margin_secs}")
        self.store = store
        self.keys = keys or KeyNaming()
        self.safety_margin_secs = safety_margin_secs
        self._clock = clock
        self._metrics = metrics

    def _now_ms(self) -> int:
        return to_millis(self._clock())

    def _record_latency(self, operation: str, started: float, error: bool = False) -> None:
        if self._metrics is not None:
            self._metrics.record_operation(operation, (time.monotonic() - started) * 1000, error)

    def on_create_or_refresh(self, record: Record, original_expiry_ms: Optional[int] = None) -> None:
        """
        Re-file a record after its last access time or inactivity window changed.

        original_expiry_ms is the absolute expiry that was in effect before
        this change (None for a new record).
        """
        started = time.monotonic()
        try:
            self._refresh(record, original_expiry_ms)
        except Exception:
            self._record_latency("on_create_or_refresh", started, error=True)
            raise
        self._record_latency("on_create_or_refresh", started)

    def _refresh(self, record: Record, original_expiry_ms: Optional[int]) -> None:
        pending_key = self.keys.pending_expiry_key(record.id)
        live_key = self.keys.live_key(record.id)
        new_expiry_ms = record.expiry_millis()
        new_bucket_ms = None if new_expiry_ms is None else round_up_to_next_minute(new_expiry_ms)

        if original_expiry_ms is not None:
            original_bucket_ms = round_up_to_next_minute(original_expiry_ms)
            if record.max_inactive_interval <= 0 or original_bucket_ms != new_bucket_ms:
                self.store.set_remove(self.keys.bucket_key(original_bucket_ms), pending_key)

        if record.max_inactive_interval == 0:
            self.store.delete(pending_key)
            self.store.delete(live_key)
            logger.debug(f"Record {record.id} has a zero inactivity window, deleted")
            return

        if record.is_permanent:
            self.store.delete(pending_key)
            self.store.persist(live_key)
            return

        now_ms = self._now_ms()
        remaining_secs = seconds_until(new_expiry_ms, now_ms)
        backstop_secs = remaining_secs + self.safety_margin_secs

        bucket_key = self.keys.bucket_key(new_bucket_ms)
        self.store.set_add(bucket_key, pending_key)
        self.store.set_expire(bucket_key, backstop_secs)

        # Marker expires at the nominal instant; its expiry is the expired signal
        self.store.set_with_ttl(pending_key, "", remaining_secs)
        self.store.expire(live_key, backstop_secs)

    def on_delete(self, record: Record) -> None:
        """Drop the record from the bucket of its current expiry. Idempotent."""
        started = time.monotonic()
        expiry_ms = record.expiry_millis()
        if expiry_ms is None:
            return
        bucket_key = self.keys.bucket_key(round_up_to_next_minute(expiry_ms))
        try:
            self.store.set_remove(bucket_key, self.keys.pending_expiry_key(record.id))
        except Exception:
            self._record_latency("on_delete", started, error=True)
            raise
        self._record_latency("on_delete", started)

    def sweep(self, minute_ms: Optional[int] = None, deadline: Optional[float] = None) -> SweepResult:
        """
        Reconcile one expiration bucket.

        By default the bucket for the previous whole minute is swept. The
        bucket is deleted before its members are touched, so running twice
        for the same minute is harmless. ``deadline`` is a time.monotonic()
        instant after which the remaining members are left untouched; their
        own TTLs still cover them.
        """
        started = time.monotonic()
        if minute_ms is None:
            minute_ms = round_down_minute(self._now_ms())
        else:
            minute_ms = round_down_minute(minute_ms)

        if logger.isEnabledFor(logging.DEBUG):
            moment = datetime.fromtimestamp(minute_ms / 1000, tz=timezone.utc).isoformat()
            logger.debug(f"Cleaning up records expiring at {moment}")

        bucket_key = self.keys.bucket_key(minute_ms)
        members = sorted(self.store.set_members(bucket_key))
        self.store.delete_collection(bucket_key)

        result = SweepResult(bucket_ms=minute_ms, members=members)
        for member in members:
            if deadline is not None and time.monotonic() >= deadline:
                result.timed_out = True
                logger.warning(
                    f"Sweep of bucket {minute_ms} hit its deadline, "
                    f"{len(members) - result.touched} members left to their TTL"
                )
                break
            if self._touch(member):
                result.still_present += 1
            result.touched += 1

        result.elapsed_ms = (time.monotonic() - started) * 1000
        return result

    def _touch(self, pending_key: str) -> bool:
        """
        Touch the pending-expiry key and then the live key so the store
        evicts whichever is past its TTL. Returns whether the live key remains.
        A member whose record was deleted or refreshed is a harmless no-op.
        """
        self.store.exists(pending_key)
        live_key = self.keys.live_key_from_pending_key(pending_key)
        if live_key is None:
            return False
        return self.store.exists(live_key)
