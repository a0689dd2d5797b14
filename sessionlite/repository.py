"""
SessionRepository - record persistence on top of the expiration policy.

Stores each record's payload under its live key and lets ExpirationPolicy
own every TTL and bucket. Expired notifications for pending-expiry keys are
turned into "expired" events; the live key, which outlives the nominal
expiry by the safety margin, is removed at that point.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

from sessionlite.backing_store import BackingStore
from sessionlite.keys import KeyNaming
from sessionlite.metrics import StructuredLogger
from sessionlite.policy import ExpirationPolicy, SweepResult
from sessionlite.record import DEFAULT_MAX_INACTIVE_INTERVAL_SECS, Record

logger = logging.getLogger(__name__)


SESSION_CREATED = "created"
SESSION_DELETED = "deleted"
SESSION_EXPIRED = "expired"


@dataclass
class SessionEvent:
    kind: str
    record_id: str
    record: Optional[Record] = None


SessionListener = Callable[[SessionEvent], None]


class SessionRepository:
    """Create, load, refresh and delete records; publish lifecycle events."""

    def __init__(
        self,
        store: BackingStore,
        policy: ExpirationPolicy,
        default_max_inactive_interval: int = DEFAULT_MAX_INACTIVE_INTERVAL_SECS,
        clock: Callable[[], float] = time.time,
        structured_logger: Optional[StructuredLogger] = None,
    ):
        self.store = store
        self.policy = policy
        self.keys: KeyNaming = policy.keys
        self.default_max_inactive_interval = default_max_inactive_interval
        self._clock = clock
        self._structured = structured_logger
        self._listeners: List[SessionListener] = []

    def add_listener(self, listener: SessionListener) -> None:
        self._listeners.append(listener)

    def _publish(self, kind: str, record_id: str, record: Optional[Record] = None) -> None:
        if self._structured is not None:
            self._structured.log_session_event(kind, record_id)
        event = SessionEvent(kind=kind, record_id=record_id, record=record)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception(f"Session listener failed on {kind} event for {record_id}")

    def subscribe_to_store(self) -> None:
        """Receive expiry notifications from the backing store."""
        self.store.add_expiry_listener(self.handle_expired_key)

    def create_session(self, max_inactive_interval: Optional[int] = None) -> Record:
        """Return a new, unsaved record."""
        now = self._clock()
        if max_inactive_interval is None:
            max_inactive_interval = self.default_max_inactive_interval
        return Record(
            creation_time=now,
            last_accessed_time=now,
            max_inactive_interval=max_inactive_interval,
        )

    def save(self, record: Record) -> None:
        is_new = record.original_expiry_ms is None and not self.store.exists(
            self.keys.live_key(record.id)
        )
        if record.max_inactive_interval != 0:
            self.store.set_with_ttl(self.keys.live_key(record.id), record.to_payload())

        self.policy.on_create_or_refresh(record, record.original_expiry_ms)
        record.original_expiry_ms = record.expiry_millis()

        if is_new and record.max_inactive_interval != 0:
            self._publish(SESSION_CREATED, record.id, record)

    def _load(self, record_id: str) -> Optional[Record]:
        payload = self.store.get(self.keys.live_key(record_id))
        if payload is None:
            return None
        try:
            record = Record.from_payload(payload)
        except (ValueError, KeyError, TypeError):
            logger.warning(f"Discarding unreadable payload for record {record_id}")
            self.store.delete(self.keys.live_key(record_id))
            return None
        record.original_expiry_ms = record.expiry_millis()
        return record

    def find_by_id(self, record_id: str) -> Optional[Record]:
        """Return the record, or None if it is absent or already past its expiry."""
        record = self._load(record_id)
        if record is None:
            return None
        if record.is_expired(self._clock()):
            # Touching the marker lets the store report the expiry, once
            self.store.exists(self.keys.pending_expiry_key(record_id))
            return None
        return record

    def touch(self, record_id: str) -> Optional[Record]:
        """Mark a record as used now and re-file its expiry."""
        record = self.find_by_id(record_id)
        if record is None:
            return None
        record.touch(self._clock())
        self.save(record)
        return record

    def delete_by_id(self, record_id: str) -> bool:
        record = self._load(record_id)
        if record is None:
            return False
        self.policy.on_delete(record)
        self.store.delete(self.keys.live_key(record_id))
        self.store.delete(self.keys.pending_expiry_key(record_id))
        self._publish(SESSION_DELETED, record_id, record)
        return True

    def handle_expired_key(self, key: str) -> None:
        """Expiry listener: a pending-expiry key expired, so its record did."""
        record_id = self.keys.record_id_from_pending_key(key)
        if record_id is None:
            return
        record = self._load(record_id)
        self.store.delete(self.keys.live_key(record_id))
        logger.debug(f"Record {record_id} expired")
        self._publish(SESSION_EXPIRED, record_id, record)

    def cleanup_expired_sessions(self) -> SweepResult:
        return self.policy.sweep()
