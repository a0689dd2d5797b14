"""
SessionLite Configuration Management

Environment-based configuration with validation and type checking.
"""

import os
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from sessionlite.keys import DEFAULT_NAMESPACE
from sessionlite.policy import DEFAULT_SAFETY_MARGIN_SECS
from sessionlite.record import DEFAULT_MAX_INACTIVE_INTERVAL_SECS


class StoreBackend(str, Enum):
    """Backing store implementation."""
    REDIS = "redis"
    MEMORY = "memory"


class LogLevel(str, Enum):
    """Logging level options."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"


@dataclass
class SessionLiteConfig:
    """
    Complete SessionLite configuration.

    All values come from environment variables with sensible defaults.
    """

    # Operations HTTP surface
    host: str = "0.0.0.0"
    http_port: int = 8000

    # Backing store
    store_backend: StoreBackend = StoreBackend.REDIS
    redis_url: Optional[str] = None
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_db: int = 0
    redis_password: Optional[str] = None
    redis_socket_timeout_secs: float = 2.0
    configure_keyspace_notifications: bool = True

    # Expiration policy
    namespace: str = DEFAULT_NAMESPACE
    default_max_inactive_interval_secs: int = DEFAULT_MAX_INACTIVE_INTERVAL_SECS
    safety_margin_secs: int = DEFAULT_SAFETY_MARGIN_SECS

    # Reconciliation scheduler
    sweep_enabled: bool = True
    sweep_interval_secs: float = 60.0
    sweep_lookback_minutes: int = 1
    sweep_timeout_secs: float = 30.0

    # Observability
    log_level: LogLevel = LogLevel.INFO
    metrics_enabled: bool = True

    @classmethod
    def from_env(cls) -> "SessionLiteConfig":
        """
        Load configuration from environment variables.

        Environment variable names:
        - SESSIONLITE_HOST
        - SESSIONLITE_HTTP_PORT
        - SESSIONLITE_STORE_BACKEND
        - SESSIONLITE_REDIS_URL
        - SESSIONLITE_REDIS_HOST
        - SESSIONLITE_REDIS_PORT
        - SESSIONLITE_REDIS_DB
        - SESSIONLITE_REDIS_PASSWORD
        - SESSIONLITE_REDIS_SOCKET_TIMEOUT_SECS
        - SESSIONLITE_CONFIGURE_KEYSPACE_NOTIFICATIONS
        - SESSIONLITE_NAMESPACE
        - SESSIONLITE_DEFAULT_MAX_INACTIVE_INTERVAL_SECS
        - SESSIONLITE_SAFETY_MARGIN_SECS
        - SESSIONLITE_SWEEP_ENABLED
        - SESSIONLITE_SWEEP_INTERVAL_SECS
        - SESSIONLITE_SWEEP_LOOKBACK_MINUTES
        - SESSIONLITE_SWEEP_TIMEOUT_SECS
        - SESSIONLITE_LOG_LEVEL
        - SESSIONLITE_METRICS_ENABLED
        """

        def get_int(key: str, default: int) -> int:
            try:
                return int(os.getenv(f"SESSIONLITE_{key}", default))
            except ValueError:
                return default

        def get_float(key: str, default: float) -> float:
            try:
                return float(os.getenv(f"SESSIONLITE_{key}", default))
            except ValueError:
                return default

        def get_bool(key: str, default: bool) -> bool:
            value = os.getenv(f"SESSIONLITE_{key}", str(default)).lower()
            return value in ("true", "1", "yes", "on")

        def get_str(key: str, default: str) -> str:
            return os.getenv(f"SESSIONLITE_{key}", default)

        def get_optional_str(key: str) -> Optional[str]:
            return get_str(key, "") or None

        def get_enum(key: str, enum_cls, default):
            value = get_str(key, default.value)
            try:
                return enum_cls(value)
            except ValueError:
                return default

        return cls(
            host=get_str("HOST", "0.0.0.0"),
            http_port=get_int("HTTP_PORT", 8000),
            store_backend=get_enum("STORE_BACKEND", StoreBackend, StoreBackend.REDIS),
            redis_url=get_optional_str("REDIS_URL"),
            redis_host=get_str("REDIS_HOST", "localhost"),
            redis_port=get_int("REDIS_PORT", 6379),
            redis_db=get_int("REDIS_DB", 0),
            redis_password=get_optional_str("REDIS_PASSWORD"),
            redis_socket_timeout_secs=get_float("REDIS_SOCKET_TIMEOUT_SECS", 2.0),
            configure_keyspace_notifications=get_bool("CONFIGURE_KEYSPACE_NOTIFICATIONS", True),
            namespace=get_str("NAMESPACE", DEFAULT_NAMESPACE),
            default_max_inactive_interval_secs=get_int(
                "DEFAULT_MAX_INACTIVE_INTERVAL_SECS", DEFAULT_MAX_INACTIVE_INTERVAL_SECS
            ),
            safety_margin_secs=get_int("SAFETY_MARGIN_SECS", DEFAULT_SAFETY_MARGIN_SECS),
            sweep_enabled=get_bool("SWEEP_ENABLED", True),
            sweep_interval_secs=get_float("SWEEP_INTERVAL_SECS", 60.0),
            sweep_lookback_minutes=get_int("SWEEP_LOOKBACK_MINUTES", 1),
            sweep_timeout_secs=get_float("SWEEP_TIMEOUT_SECS", 30.0),
            log_level=get_enum("LOG_LEVEL", LogLevel, LogLevel.INFO),
            metrics_enabled=get_bool("METRICS_ENABLED", True),
        )

    def validate(self) -> bool:
        """
        Validate configuration values.

        Returns:
            True if valid, raises ValueError if invalid
        """
        if self.http_port < 1024 or self.http_port > 65535:
            raise ValueError(f"Invalid http_port: {self.http_port}")

        if self.redis_port < 1 or self.redis_port > 65535:
            raise ValueError(f"Invalid redis_port: {self.redis_port}")

        if self.redis_db < 0:
            raise ValueError(f"Invalid redis_db: {self.redis_db}")

        if self.redis_socket_timeout_secs <= 0:
            raise ValueError(f"redis_socket_timeout_secs must be positive: {self.redis_socket_timeout_secs}")

        if not self.namespace.strip(":"):
            raise ValueError("namespace cannot be empty")

        if self.safety_margin_secs < 0:
            raise ValueError(f"safety_margin_secs cannot be negative: {self.safety_margin_secs}")

        if self.sweep_interval_secs < 1:
            raise ValueError(f"sweep_interval_secs too small: {self.sweep_interval_secs}")

        # The scheduler must come around before the backstop TTL fires
        if self.sweep_interval_secs >= self.safety_margin_secs > 0:
            raise ValueError(
                f"sweep_interval_secs ({self.sweep_interval_secs}) must be shorter "
                f"than safety_margin_secs ({self.safety_margin_secs})"
            )

        if self.sweep_lookback_minutes < 1:
            raise ValueError(f"sweep_lookback_minutes must be at least 1: {self.sweep_lookback_minutes}")

        if self.sweep_timeout_secs <= 0:
            raise ValueError(f"sweep_timeout_secs must be positive: {self.sweep_timeout_secs}")

        return True

    def to_dict(self) -> dict:
        """Convert configuration to dictionary (password masked)."""
        return {
            "host": self.host,
            "http_port": self.http_port,
            "store_backend": self.store_backend.value,
            "redis_url": "***" if self.redis_url else None,
            "redis_host": self.redis_host,
            "redis_port": self.redis_port,
            "redis_db": self.redis_db,
            "redis_password": "***" if self.redis_password else None,
            "redis_socket_timeout_secs": self.redis_socket_timeout_secs,
            "configure_keyspace_notifications": self.configure_keyspace_notifications,
            "namespace": self.namespace,
            "default_max_inactive_interval_secs": self.default_max_inactive_interval_secs,
            "safety_margin_secs": self.safety_margin_secs,
            "sweep_enabled": self.sweep_enabled,
            "sweep_interval_secs": self.sweep_interval_secs,
            "sweep_lookback_minutes": self.sweep_lookback_minutes,
            "sweep_timeout_secs": self.sweep_timeout_secs,
            "log_level": self.log_level.value,
            "metrics_enabled": self.metrics_enabled,
        }

    def __str__(self) -> str:
        lines = ["SessionLite Configuration:"]
        for key, value in self.to_dict().items():
            lines.append(f"  {key}: {value}")
        return "\n".join(lines)
