"""
SessionLite Key Naming & Bucket Math

Every piece of state lives in the backing store under one of three key shapes:

    <ns>:sessions:<id>             live record payload
    <ns>:sessions:expires:<id>     pending-expiry marker (exact TTL, no margin)
    <ns>:expirations:<epoch_ms>    expiration bucket (set of pending-expiry keys)

Bucket instants are epoch milliseconds aligned to a whole minute.
"""

from typing import Optional


MINUTE_MS = 60_000

DEFAULT_NAMESPACE = "sessionlite:session"


def to_millis(epoch_seconds: float) -> int:
    """Convert epoch seconds (time.time() style) to integer milliseconds."""
    return int(round(epoch_seconds * 1000))


def round_up_to_next_minute(time_ms: int) -> int:
    """
    Round an instant up to the start of the following minute.

    An instant already on a boundary still moves forward one minute, so a
    bucket is never swept before every member in it is due.
    """
    return (time_ms // MINUTE_MS + 1) * MINUTE_MS


def round_down_minute(time_ms: int) -> int:
    """Truncate an instant to the start of its minute."""
    return (time_ms // MINUTE_MS) * MINUTE_MS


def seconds_until(target_ms: int, now_ms: int) -> int:
    """Whole seconds from now until target, rounded up, never below 1."""
    remaining_ms = target_ms - now_ms
    if remaining_ms <= 0:
        return 1
    return max(1, -(-remaining_ms // 1000))


class KeyNaming:
    """Deterministic, collision-free key derivation for one namespace."""

    SESSIONS = "sessions"
    EXPIRES = "expires"
    EXPIRATIONS = "expirations"

    def __init__(self, namespace: str = DEFAULT_NAMESPACE):
        namespace = (namespace or DEFAULT_NAMESPACE).rstrip(":")
        self.namespace = namespace
        self._sessions_prefix = f"{namespace}:{self.SESSIONS}:"
        self._expires_prefix = f"{self._sessions_prefix}{self.EXPIRES}:"
        self._expirations_prefix = f"{namespace}:{self.EXPIRATIONS}:"

    def live_key(self, record_id: str) -> str:
        return f"{self._sessions_prefix}{record_id}"

    def pending_expiry_key(self, record_id: str) -> str:
        return f"{self._expires_prefix}{record_id}"

    def bucket_key(self, minute_ms: int) -> str:
        if minute_ms % MINUTE_MS != 0:
            raise ValueError(f"Bucket instant is not minute aligned: {minute_ms}")
        return f"{self._expirations_prefix}{minute_ms}"

    def record_id_from_pending_key(self, key: str) -> Optional[str]:
        """Return the record id behind a pending-expiry key, or None for any other key."""
        if not key.startswith(self._expires_prefix):
            return None
        record_id = key[len(self._expires_prefix):]
        return record_id or None

    def live_key_from_pending_key(self, key: str) -> Optional[str]:
        record_id = self.record_id_from_pending_key(key)
        if record_id is None:
            return None
        return self.live_key(record_id)
