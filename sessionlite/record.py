"""
Record - the unit of state with a sliding lifetime.

A record is "used" by the owning application, which bumps
``last_accessed_time``; ``max_inactive_interval`` decides the policy:

- ``> 0``  expires that many seconds after last use (sliding expiration)
- ``== 0`` expired immediately, never persisted
- ``< 0``  permanent, never indexed for expiry
"""

import json
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from sessionlite.keys import to_millis


DEFAULT_MAX_INACTIVE_INTERVAL_SECS = 1800


@dataclass
class Record:
    """A stored record and the metadata its expiry is computed from."""

    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    creation_time: float = field(default_factory=time.time)
    last_accessed_time: Optional[float] = None
    max_inactive_interval: int = DEFAULT_MAX_INACTIVE_INTERVAL_SECS
    attributes: Dict[str, Any] = field(default_factory=dict)

    # Absolute expiry as last written to the store; not part of the payload.
    original_expiry_ms: Optional[int] = field(default=None, repr=False, compare=False)

    def __post_init__(self):
        if self.last_accessed_time is None:
            self.last_accessed_time = self.creation_time

    @property
    def is_permanent(self) -> bool:
        return self.max_inactive_interval < 0

    def expiry_millis(self) -> Optional[int]:
        """Absolute expiry in epoch milliseconds, None for permanent records."""
        if self.is_permanent:
            return None
        return to_millis(self.last_accessed_time) + self.max_inactive_interval * 1000

    def is_expired(self, now: Optional[float] = None) -> bool:
        if self.max_inactive_interval == 0:
            return True
        if self.is_permanent:
            return False
        now = time.time() if now is None else now
        return to_millis(now) >= self.expiry_millis()

    def touch(self, now: Optional[float] = None) -> None:
        """Mark the record as used right now."""
        self.last_accessed_time = time.time() if now is None else now

    def get_attribute(self, name: str, default: Any = None) -> Any:
        return self.attributes.get(name, default)

    def set_attribute(self, name: str, value: Any) -> None:
        if value is None:
            self.attributes.pop(name, None)
        else:
            self.attributes[name] = value

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "creation_time": self.creation_time,
            "last_accessed_time": self.last_accessed_time,
            "max_inactive_interval": self.max_inactive_interval,
            "attributes": self.attributes,
        }

    def to_payload(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_payload(cls, payload: str) -> "Record":
        data = json.loads(payload)
        if not isinstance(data, dict) or "id" not in data:
            raise ValueError("Record payload is not an object with an id")
        return cls(
            id=data["id"],
            creation_time=float(data["creation_time"]),
            last_accessed_time=float(data["last_accessed_time"]),
            max_inactive_interval=int(data["max_inactive_interval"]),
            attributes=dict(data.get("attributes") or {}),
        )
