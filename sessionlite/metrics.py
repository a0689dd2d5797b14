"""
SessionLite Observability & Metrics

Metrics collection and Prometheus export for the expiration subsystem:
- Per-operation latency (refresh, delete, sweep)
- Sweep outcome counters (members touched, timeouts, failures)
- Structured JSON logging of sweeps and record lifecycle events
"""

import json
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional


@dataclass
class OperationMetrics:
    """Metrics for a single operation type."""
    name: str
    count: int = 0
    total_latency_ms: float = 0.0
    min_latency_ms: float = float('inf')
    max_latency_ms: float = 0.0
    error_count: int = 0

    @property
    def avg_latency_ms(self) -> float:
        """Average latency in milliseconds."""
        if self.count == 0:
            return 0.0
        return self.total_latency_ms / self.count

    def record(self, latency_ms: float, error: bool = False):
        """Record one execution."""
        self.count += 1
        self.total_latency_ms += latency_ms
        self.min_latency_ms = min(self.min_latency_ms, latency_ms)
        self.max_latency_ms = max(self.max_latency_ms, latency_ms)
        if error:
            self.error_count += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "count": self.count,
            "error_count": self.error_count,
            "avg_latency_ms": round(self.avg_latency_ms, 3),
            "min_latency_ms": round(self.min_latency_ms, 3) if self.min_latency_ms != float('inf') else 0,
            "max_latency_ms": round(self.max_latency_ms, 3),
        }


class MetricsCollector:
    """
    Centralized metrics for the expiration policy and its scheduler.

    Tracks:
    - Per-operation latency (on_create_or_refresh, on_delete, sweep)
    - Sweeps run, members touched, members still present after touch
    - Sweep timeouts and failed ticks
    """

    def __init__(self):
        self.operation_metrics: Dict[str, OperationMetrics] = {}
        self.metrics_lock = threading.RLock()

        self.start_time = time.time()
        self.sweeps_total = 0
        self.sweep_failures_total = 0
        self.sweep_timeouts_total = 0
        self.members_swept_total = 0
        self.members_touched_total = 0
        self.members_present_total = 0
        self.last_sweep_bucket_ms: Optional[int] = None
        self.last_sweep_time: Optional[float] = None

    def record_operation(self, name: str, latency_ms: float, error: bool = False) -> None:
        with self.metrics_lock:
            if name not in self.operation_metrics:
                self.operation_metrics[name] = OperationMetrics(name)
            self.operation_metrics[name].record(latency_ms, error)

    def record_sweep(self, result: Any) -> None:
        """Fold a SweepResult into the sweep counters."""
        with self.metrics_lock:
            self.sweeps_total += 1
            self.members_swept_total += len(result.members)
            self.members_touched_total += result.touched
            self.members_present_total += result.still_present
            if result.timed_out:
                self.sweep_timeouts_total += 1
            self.last_sweep_bucket_ms = result.bucket_ms
            self.last_sweep_time = time.time()
        self.record_operation("sweep", result.elapsed_ms)

    def record_sweep_failure(self) -> None:
        with self.metrics_lock:
            self.sweep_failures_total += 1
        self.record_operation("sweep", 0.0, error=True)

    def get_operation_metrics(self, name: str = None) -> Dict[str, Any]:
        with self.metrics_lock:
            if name:
                if name in self.operation_metrics:
                    return self.operation_metrics[name].to_dict()
                return {}

            return {
                op: metrics.to_dict()
                for op, metrics in self.operation_metrics.items()
            }

    def get_sweep_stats(self) -> Dict[str, Any]:
        with self.metrics_lock:
            return {
                "sweeps_total": self.sweeps_total,
                "sweep_failures_total": self.sweep_failures_total,
                "sweep_timeouts_total": self.sweep_timeouts_total,
                "members_swept_total": self.members_swept_total,
                "members_touched_total": self.members_touched_total,
                "members_present_total": self.members_present_total,
                "last_sweep_bucket_ms": self.last_sweep_bucket_ms,
                "last_sweep_time": self.last_sweep_time,
            }

    def export_prometheus(self) -> str:
        """Export metrics in Prometheus text format."""
        uptime = time.time() - self.start_time
        sweep = self.get_sweep_stats()

        prometheus_lines = [
            "# HELP sessionlite_uptime_seconds Process uptime in seconds",
            "# TYPE sessionlite_uptime_seconds counter",
            f"sessionlite_uptime_seconds {uptime}",
            "",
            "# HELP sessionlite_sweeps_total Expiration buckets swept",
            "# TYPE sessionlite_sweeps_total counter",
            f"sessionlite_sweeps_total {sweep['sweeps_total']}",
            "",
            "# HELP sessionlite_sweep_failures_total Sweep ticks that failed",
            "# TYPE sessionlite_sweep_failures_total counter",
            f"sessionlite_sweep_failures_total {sweep['sweep_failures_total']}",
            "",
            "# HELP sessionlite_sweep_timeouts_total Sweeps stopped by their deadline",
            "# TYPE sessionlite_sweep_timeouts_total counter",
            f"sessionlite_sweep_timeouts_total {sweep['sweep_timeouts_total']}",
            "",
            "# HELP sessionlite_members_swept_total Pending-expiry keys read from buckets",
            "# TYPE sessionlite_members_swept_total counter",
            f"sessionlite_members_swept_total {sweep['members_swept_total']}",
            "",
            "# HELP sessionlite_members_touched_total Pending-expiry keys touched",
            "# TYPE sessionlite_members_touched_total counter",
            f"sessionlite_members_touched_total {sweep['members_touched_total']}",
            "",
            "# HELP sessionlite_members_present_total Live keys still present after touch",
            "# TYPE sessionlite_members_present_total counter",
            f"sessionlite_members_present_total {sweep['members_present_total']}",
            "",
        ]

        with self.metrics_lock:
            for op_name, op_metrics in self.operation_metrics.items():
                op_lower = op_name.lower()
                prometheus_lines.extend([
                    f"# HELP sessionlite_op_{op_lower}_count Total executions",
                    f"# TYPE sessionlite_op_{op_lower}_count counter",
                    f"sessionlite_op_{op_lower}_count {op_metrics.count}",
                    "",
                    f"# HELP sessionlite_op_{op_lower}_errors Failed executions",
                    f"# TYPE sessionlite_op_{op_lower}_errors counter",
                    f"sessionlite_op_{op_lower}_errors {op_metrics.error_count}",
                    "",
                    f"# HELP sessionlite_op_{op_lower}_latency_ms Average latency",
                    f"# TYPE sessionlite_op_{op_lower}_latency_ms gauge",
                    f"sessionlite_op_{op_lower}_latency_ms {op_metrics.avg_latency_ms:.3f}",
                    "",
                ])

        return "\n".join(prometheus_lines)

    def export_json(self) -> str:
        metrics_dict = {
            "timestamp": datetime.now().isoformat(),
            "uptime_seconds": time.time() - self.start_time,
            "sweep": self.get_sweep_stats(),
            "operations": self.get_operation_metrics(),
        }
        return json.dumps(metrics_dict, indent=2)


class StructuredLogger:
    """
    Structured JSON logging for production observability.

    One JSON object per event for log aggregation.
    """

    def __init__(self, name: str = "sessionlite"):
        self.logger = logging.getLogger(name)

    def _emit(self, level: int, log_entry: Dict[str, Any]) -> None:
        log_entry["timestamp"] = datetime.now().isoformat()
        self.logger.log(level, json.dumps(log_entry, default=str))

    def log_sweep(self, result: Any) -> None:
        """Log a completed sweep of one expiration bucket."""
        self._emit(logging.INFO, {
            "event": "sweep_completed",
            "bucket_ms": result.bucket_ms,
            "members": len(result.members),
            "touched": result.touched,
            "still_present": result.still_present,
            "timed_out": result.timed_out,
            "elapsed_ms": round(result.elapsed_ms, 3),
        })

    def log_sweep_failed(self, bucket_ms: Optional[int], error: BaseException) -> None:
        self._emit(logging.WARNING, {
            "event": "sweep_failed",
            "bucket_ms": bucket_ms,
            "error_type": type(error).__name__,
            "error": str(error),
        })

    def log_session_event(self, kind: str, record_id: str) -> None:
        self._emit(logging.INFO, {
            "event": "session_event",
            "kind": kind,
            "record_id": record_id,
        })

    def log_startup(self, config: Dict[str, Any]) -> None:
        self._emit(logging.INFO, {
            "event": "server_started",
            "config": config,
        })

    def log_shutdown(self, reason: str, final_stats: Dict[str, Any]) -> None:
        self._emit(logging.INFO, {
            "event": "server_shutdown",
            "reason": reason,
            "final_stats": final_stats,
        })
