"""
Backing Store Abstraction

The expiration policy only ever talks to the key-value engine through this
narrow capability surface, so any engine with per-key TTLs and set
collections can back it:

- RedisBackingStore (production, redis-py)
- InMemoryBackingStore (development and tests)

Every method is a single atomic store operation. Implementations raise
StoreUnavailableError when the engine cannot be reached.
"""

from abc import ABC, abstractmethod
from typing import Callable, Optional, Set


ExpiryListener = Callable[[str], None]


class SessionLiteError(Exception):
    """Base class for SessionLite errors."""


class StoreUnavailableError(SessionLiteError):
    """The backing store could not be reached (connection refused, timeout)."""


class KeyspaceConfigurationError(SessionLiteError):
    """Keyspace expiry notifications could not be enabled on the store."""


class BackingStore(ABC):
    """
    Capability interface consumed by ExpirationPolicy and SessionRepository.

    TTLs are whole seconds. Set members are strings.
    """

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Return the value stored at key, or None if absent or expired."""
        pass

    @abstractmethod
    def set_with_ttl(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        """Store value at key. ttl_seconds=None stores it without expiry."""
        pass

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Delete key. Returns True if it existed."""
        pass

    @abstractmethod
    def exists(self, key: str) -> bool:
        """Existence check. Also the touch primitive: forces lazy expiry of key."""
        pass

    @abstractmethod
    def expire(self, key: str, ttl_seconds: int) -> bool:
        """Set a TTL on an existing key of any type. Returns False if key is absent."""
        pass

    @abstractmethod
    def persist(self, key: str) -> bool:
        """Remove the TTL of key. Returns True if a TTL was removed."""
        pass

    @abstractmethod
    def set_add(self, collection_key: str, member: str) -> bool:
        """Add member to the set at collection_key, creating it if needed."""
        pass

    @abstractmethod
    def set_remove(self, collection_key: str, member: str) -> bool:
        """Remove member from a set. Removing a non-member is a no-op."""
        pass

    @abstractmethod
    def set_members(self, collection_key: str) -> Set[str]:
        """Return all members of the set (empty if it does not exist)."""
        pass

    @abstractmethod
    def set_expire(self, collection_key: str, ttl_seconds: int) -> bool:
        """Set a TTL on a whole set collection."""
        pass

    @abstractmethod
    def delete_collection(self, collection_key: str) -> bool:
        """Delete a set collection. Returns True if it existed."""
        pass

    def add_expiry_listener(self, listener: ExpiryListener) -> None:
        """
        Register a callback invoked with the key name whenever the store
        expires a key on its own. Delivery is best effort.
        """
        raise NotImplementedError(f"{type(self).__name__} does not deliver expiry notifications")

    def close(self) -> None:
        """Release connections and background workers."""
        pass
