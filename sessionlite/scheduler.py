"""
Reconciliation Scheduler

Runs ExpirationPolicy.sweep() on a fixed period from a dedicated daemon
thread. Each tick re-checks the last few minutes (sweeping an already
swept minute finds an empty bucket), which absorbs timer jitter and short
pauses. A tick that fails is logged and counted; the next tick runs as usual.
"""

import logging
import threading
import time
from typing import Callable, List, Optional

from sessionlite.backing_store import StoreUnavailableError
from sessionlite.keys import MINUTE_MS, round_down_minute, to_millis
from sessionlite.metrics import MetricsCollector, StructuredLogger
from sessionlite.policy import ExpirationPolicy, SweepResult

logger = logging.getLogger(__name__)

# Upper bound on minutes swept to catch up after a late or failed tick
MAX_CATCHUP_MINUTES = 10


class ReconciliationScheduler:
    """Periodic driver for the expiration sweep."""

    def __init__(
        self,
        policy: ExpirationPolicy,
        interval_secs: float = 60.0,
        lookback_minutes: int = 1,
        sweep_timeout_secs: Optional[float] = 30.0,
        metrics: Optional[MetricsCollector] = None,
        structured_logger: Optional[StructuredLogger] = None,
        clock: Callable[[], float] = time.time,
    ):
        if interval_secs <= 0:
            raise ValueError(f"interval_secs must be positive: {interval_secs}")
        if lookback_minutes < 1:
            raise ValueError(f"lookback_minutes must be at least 1: {lookback_minutes}")

        self.policy = policy
        self.interval_secs = interval_secs
        self.lookback_minutes = lookback_minutes
        self.sweep_timeout_secs = sweep_timeout_secs
        self._metrics = metrics
        self._structured = structured_logger
        self._clock = clock

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

        self.ticks_total = 0
        self.failed_ticks_total = 0
        self.last_tick_time: Optional[float] = None
        self.last_swept_minute_ms: Optional[int] = None

    def minutes_to_sweep(self) -> List[int]:
        """
        Bucket instants checked by the next tick, oldest first: the look-back
        window plus any minute skipped since the last swept one.
        """
        current_minute = round_down_minute(to_millis(self._clock()))
        first_minute = current_minute - (self.lookback_minutes - 1) * MINUTE_MS
        if self.last_swept_minute_ms is not None:
            first_missed = max(
                self.last_swept_minute_ms + MINUTE_MS,
                current_minute - MAX_CATCHUP_MINUTES * MINUTE_MS,
            )
            first_minute = min(first_minute, first_missed)
        return list(range(first_minute, current_minute + 1, MINUTE_MS))

    def run_once(self) -> List[SweepResult]:
        """
        Run a single tick. Never raises: failures end the tick early and are
        reported through logs and metrics.
        """
        self.ticks_total += 1
        self.last_tick_time = self._clock()
        deadline = None
        if self.sweep_timeout_secs:
            deadline = time.monotonic() + self.sweep_timeout_secs

        results: List[SweepResult] = []
        for minute_ms in self.minutes_to_sweep():
            try:
                result = self.policy.sweep(minute_ms=minute_ms, deadline=deadline)
            except StoreUnavailableError as e:
                logger.warning(f"Sweep of bucket {minute_ms} skipped, store unavailable: {e}")
                self._tick_failed(minute_ms, e)
                break
            except Exception as e:
                logger.exception(f"Sweep of bucket {minute_ms} failed")
                self._tick_failed(minute_ms, e)
                break

            results.append(result)
            if self.last_swept_minute_ms is None or minute_ms > self.last_swept_minute_ms:
                self.last_swept_minute_ms = minute_ms
            if self._metrics is not None:
                self._metrics.record_sweep(result)
            if self._structured is not None and result.members:
                self._structured.log_sweep(result)
            if result.timed_out:
                break

        return results

    def _tick_failed(self, minute_ms: int, error: BaseException) -> None:
        self.failed_ticks_total += 1
        if self._metrics is not None:
            self._metrics.record_sweep_failure()
        if self._structured is not None:
            self._structured.log_sweep_failed(minute_ms, error)

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            self.run_once()
            self._stop_event.wait(self.seconds_to_next_tick())

    def seconds_to_next_tick(self) -> float:
        """Wait that lands the next tick on an interval boundary of the clock."""
        return self.interval_secs - (self._clock() % self.interval_secs)

    def start(self) -> None:
        """Start the sweep thread. Calling start on a running scheduler is a no-op."""
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._loop,
            name="SessionLite-Reconciler",
            daemon=True,
        )
        self._thread.start()
        logger.info(
            f"Reconciliation scheduler started (every {self.interval_secs}s, "
            f"lookback {self.lookback_minutes} min)"
        )

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        logger.info("Reconciliation scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def get_stats(self) -> dict:
        return {
            "running": self.is_running,
            "interval_secs": self.interval_secs,
            "lookback_minutes": self.lookback_minutes,
            "sweep_timeout_secs": self.sweep_timeout_secs,
            "ticks_total": self.ticks_total,
            "failed_ticks_total": self.failed_ticks_total,
            "last_tick_time": self.last_tick_time,
            "last_swept_minute_ms": self.last_swept_minute_ms,
        }
