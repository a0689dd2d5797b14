"""
RedisBackingStore - Production Backend

Maps the BackingStore capability surface onto redis-py commands:

    get / set_with_ttl / delete / exists   GET, SET [EX], DEL, EXISTS
    expire / persist                       EXPIRE, PERSIST
    set_add / set_remove / set_members     SADD, SREM, SMEMBERS
    set_expire / delete_collection         EXPIRE, DEL

Connection failures and timeouts surface as StoreUnavailableError. Expiry
notifications arrive through the keyspace event channel
``__keyevent@<db>__:expired``, which needs ``notify-keyspace-events`` to
contain E, g and x.
"""

import functools
import logging
from typing import Any, List, Optional, Set

import redis

from sessionlite.backing_store import (
    BackingStore,
    ExpiryListener,
    KeyspaceConfigurationError,
    StoreUnavailableError,
)

logger = logging.getLogger(__name__)


CONFIG_NOTIFY_KEYSPACE_EVENTS = "notify-keyspace-events"


def merge_notify_options(current: str) -> str:
    """
    Add the keyspace event classes expiry notifications depend on.

    E enables keyevent notifications; g (generic commands) and x (expired)
    are implied when the A alias is already present.
    """
    options = current or ""
    if "E" not in options:
        options += "E"
    has_all = "A" in options
    if not (has_all or "g" in options):
        options += "g"
    if not (has_all or "x" in options):
        options += "x"
    return options


def _translate_errors(method):
    """Re-raise redis connectivity failures as StoreUnavailableError."""

    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        try:
            return method(self, *args, **kwargs)
        except (redis.exceptions.ConnectionError, redis.exceptions.TimeoutError) as e:
            raise StoreUnavailableError(f"Redis {method.__name__} failed: {e}") from e

    return wrapper


class RedisBackingStore(BackingStore):
    """BackingStore over a redis.Redis client created with decode_responses=True."""

    def __init__(self, client: redis.Redis, db: int = 0):
        self._client = client
        self._db = db
        self._listeners: List[ExpiryListener] = []
        self._pubsub = None
        self._pubsub_thread = None

    @classmethod
    def from_config(cls, config: Any) -> "RedisBackingStore":
        """Build a client from a SessionLiteConfig and verify it answers PING."""
        if config.redis_url:
            client = redis.Redis.from_url(
                config.redis_url,
                decode_responses=True,
                socket_timeout=config.redis_socket_timeout_secs,
            )
            db = int(client.connection_pool.connection_kwargs.get("db", 0) or 0)
        else:
            client = redis.Redis(
                host=config.redis_host,
                port=config.redis_port,
                db=config.redis_db,
                password=config.redis_password,
                decode_responses=True,
                socket_timeout=config.redis_socket_timeout_secs,
            )
            db = config.redis_db

        store = cls(client, db=db)
        store.ping()
        return store

    @_translate_errors
    def ping(self) -> bool:
        return bool(self._client.ping())

    @_translate_errors
    def get(self, key: str) -> Optional[str]:
        return self._client.get(key)

    @_translate_errors
    def set_with_ttl(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        if ttl_seconds is None:
            self._client.set(key, value)
        else:
            self._client.set(key, value, ex=int(ttl_seconds))

    @_translate_errors
    def delete(self, key: str) -> bool:
        return self._client.delete(key) > 0

    @_translate_errors
    def exists(self, key: str) -> bool:
        return self._client.exists(key) > 0

    @_translate_errors
    def expire(self, key: str, ttl_seconds: int) -> bool:
        return bool(self._client.expire(key, int(ttl_seconds)))

    @_translate_errors
    def persist(self, key: str) -> bool:
        return bool(self._client.persist(key))

    @_translate_errors
    def set_add(self, collection_key: str, member: str) -> bool:
        return self._client.sadd(collection_key, member) > 0

    @_translate_errors
    def set_remove(self, collection_key: str, member: str) -> bool:
        return self._client.srem(collection_key, member) > 0

    @_translate_errors
    def set_members(self, collection_key: str) -> Set[str]:
        return set(self._client.smembers(collection_key))

    @_translate_errors
    def set_expire(self, collection_key: str, ttl_seconds: int) -> bool:
        return bool(self._client.expire(collection_key, int(ttl_seconds)))

    @_translate_errors
    def delete_collection(self, collection_key: str) -> bool:
        return self._client.delete(collection_key) > 0

    # ------------------------------------------------------------------
    # Keyspace notifications
    # ------------------------------------------------------------------

    @_translate_errors
    def configure_keyspace_notifications(self) -> str:
        """
        Make sure the server publishes expired events. Returns the options in effect.

        Secured instances usually refuse CONFIG; those must be configured
        externally and this step disabled.
        """
        try:
            current = self._client.config_get(CONFIG_NOTIFY_KEYSPACE_EVENTS)
            notify_options = current.get(CONFIG_NOTIFY_KEYSPACE_EVENTS, "") if current else ""
            merged = merge_notify_options(notify_options)
            if merged != notify_options:
                self._client.config_set(CONFIG_NOTIFY_KEYSPACE_EVENTS, merged)
                logger.info(f"Set {CONFIG_NOTIFY_KEYSPACE_EVENTS} to '{merged}' (was '{notify_options}')")
            return merged
        except redis.exceptions.ResponseError as e:
            raise KeyspaceConfigurationError(
                "Unable to enable Redis keyspace notifications. Configure "
                f"'{CONFIG_NOTIFY_KEYSPACE_EVENTS} Egx' on the server and set "
                "SESSIONLITE_CONFIGURE_KEYSPACE_NOTIFICATIONS=false"
            ) from e

    @property
    def expired_channel(self) -> str:
        return f"__keyevent@{self._db}__:expired"

    def _on_expired_message(self, message: dict) -> None:
        key = message.get("data")
        if not isinstance(key, str):
            return
        for listener in list(self._listeners):
            try:
                listener(key)
            except Exception:
                logger.exception("Expiry listener failed for key %s", key)

    @_translate_errors
    def add_expiry_listener(self, listener: ExpiryListener) -> None:
        self._listeners.append(listener)
        if self._pubsub is not None:
            return
        self._pubsub = self._client.pubsub(ignore_subscribe_messages=True)
        self._pubsub.subscribe(**{self.expired_channel: self._on_expired_message})
        self._pubsub_thread = self._pubsub.run_in_thread(sleep_time=0.5, daemon=True)
        logger.info(f"Subscribed to {self.expired_channel}")

    def close(self) -> None:
        if self._pubsub_thread is not None:
            self._pubsub_thread.stop()
            self._pubsub_thread = None
        if self._pubsub is not None:
            self._pubsub.close()
            self._pubsub = None
        self._client.close()
