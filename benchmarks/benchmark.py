"""
SessionLite Expiration Benchmark

Measures the expiration policy against the in-memory backing store:
- Sequential create/refresh bookkeeping
- Refresh that moves a record between buckets
- Sweeping one large bucket
- Concurrent touches through the repository

Store latency is excluded, so the numbers show the policy's own overhead.
"""

import argparse
import json
import statistics
import sys
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List

sys.path.insert(0, str(Path(__file__).parent.parent))

from sessionlite.keys import KeyNaming
from sessionlite.memory_store import InMemoryBackingStore, ManualClock
from sessionlite.policy import ExpirationPolicy
from sessionlite.record import Record
from sessionlite.repository import SessionRepository

# Minute aligned so bucket placement is predictable
START = 1_700_000_040.0


@dataclass
class BenchmarkResult:
    name: str
    operation_count: int = 0
    total_time_ms: float = 0.0
    latencies_ms: List[float] = field(default_factory=list)
    error_count: int = 0

    @property
    def throughput_ops_sec(self) -> float:
        if self.total_time_ms <= 0:
            return 0.0
        return self.operation_count / (self.total_time_ms / 1000)

    def percentile(self, pct: int) -> float:
        if not self.latencies_ms:
            return 0.0
        if len(self.latencies_ms) < 100:
            return max(self.latencies_ms)
        return statistics.quantiles(self.latencies_ms, n=100)[pct - 1]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "operation_count": self.operation_count,
            "total_time_ms": round(self.total_time_ms, 2),
            "throughput_ops_sec": round(self.throughput_ops_sec, 2),
            "error_count": self.error_count,
            "latency_ms": {
                "avg": round(statistics.mean(self.latencies_ms), 4) if self.latencies_ms else 0,
                "p50": round(self.percentile(50), 4),
                "p99": round(self.percentile(99), 4),
            },
        }


class BenchmarkSuite:
    """Runs each scenario on a fresh store and policy."""

    def __init__(self, output_file: str = "benchmark_results.json"):
        self.results: List[BenchmarkResult] = []
        self.output_file = output_file

    def _fresh(self):
        clock = ManualClock(START)
        store = InMemoryBackingStore(clock=clock, notify_on_expiry=False)
        policy = ExpirationPolicy(store, keys=KeyNaming("bench:session"), clock=clock)
        return clock, store, policy

    def _timed(self, result: BenchmarkResult, operation: Callable[[], Any]) -> None:
        start = time.perf_counter()
        try:
            operation()
        except Exception:
            result.error_count += 1
            return
        result.latencies_ms.append((time.perf_counter() - start) * 1000.0)
        result.operation_count += 1

    def benchmark_create(self, count: int = 50_000) -> BenchmarkResult:
        print(f"Benchmarking create bookkeeping ({count} records)...")
        clock, store, policy = self._fresh()
        result = BenchmarkResult(name="Create")

        start = time.perf_counter()
        for i in range(count):
            record = Record(id=f"r{i}", creation_time=clock(), max_inactive_interval=1800)
            self._timed(result, lambda record=record: policy.on_create_or_refresh(record))
        result.total_time_ms = (time.perf_counter() - start) * 1000
        return result

    def benchmark_bucket_move(self, count: int = 50_000) -> BenchmarkResult:
        print(f"Benchmarking refresh across buckets ({count} records)...")
        clock, store, policy = self._fresh()
        records = []
        for i in range(count):
            record = Record(id=f"r{i}", creation_time=clock(), max_inactive_interval=90)
            policy.on_create_or_refresh(record)
            records.append(record)

        clock.advance(60)
        result = BenchmarkResult(name="Refresh (bucket move)")
        start = time.perf_counter()
        for record in records:
            previous = record.expiry_millis()
            record.touch(clock())
            self._timed(result, lambda record=record, previous=previous: policy.on_create_or_refresh(record, previous))
        result.total_time_ms = (time.perf_counter() - start) * 1000
        return result

    def benchmark_sweep(self, members: int = 100_000) -> BenchmarkResult:
        print(f"Benchmarking sweep of one bucket ({members} members)...")
        clock, store, policy = self._fresh()
        for i in range(members):
            policy.on_create_or_refresh(
                Record(id=f"r{i}", creation_time=clock(), max_inactive_interval=30)
            )

        clock.advance(65)
        result = BenchmarkResult(name=f"Sweep ({members} members)")
        start = time.perf_counter()
        sweep = policy.sweep()
        result.total_time_ms = (time.perf_counter() - start) * 1000
        result.operation_count = sweep.touched
        print(f"  Touched {sweep.touched}, still present {sweep.still_present}")
        return result

    def benchmark_concurrent_touch(self, workers: int = 16, touches_per_worker: int = 2_000) -> BenchmarkResult:
        print(f"Benchmarking {workers} concurrent workers ({touches_per_worker} touches each)...")
        clock, store, policy = self._fresh()
        repository = SessionRepository(store, policy, default_max_inactive_interval=1800, clock=clock)
        record_ids = []
        for _ in range(workers * 10):
            record = repository.create_session()
            repository.save(record)
            record_ids.append(record.id)

        result = BenchmarkResult(name=f"Concurrent Touch ({workers})")
        result_lock = threading.Lock()

        def worker(worker_id: int):
            local = BenchmarkResult(name="worker")
            for i in range(touches_per_worker):
                record_id = record_ids[(worker_id * 10 + i) % len(record_ids)]
                self._timed(local, lambda record_id=record_id: repository.touch(record_id))
            with result_lock:
                result.latencies_ms.extend(local.latencies_ms)
                result.operation_count += local.operation_count
                result.error_count += local.error_count

        start = time.perf_counter()
        threads = [threading.Thread(target=worker, args=(n,)) for n in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        result.total_time_ms = (time.perf_counter() - start) * 1000
        return result

    def run_all(self, scale: float = 1.0) -> None:
        print("=" * 60)
        print("SessionLite Expiration Benchmark")
        print("=" * 60)
        print()

        self.results.append(self.benchmark_create(int(50_000 * scale)))
        self.results.append(self.benchmark_bucket_move(int(50_000 * scale)))
        self.results.append(self.benchmark_sweep(int(100_000 * scale)))
        self.results.append(self.benchmark_concurrent_touch(touches_per_worker=int(2_000 * scale)))

        self._print_summary()
        self._save_results()

    def _print_summary(self) -> None:
        print()
        print("=" * 60)
        print("Benchmark Results Summary")
        print("=" * 60)
        print()
        for result in self.results:
            print(f"Test: {result.name}")
            print(f"  Operations: {result.operation_count:,}")
            print(f"  Total Time: {result.total_time_ms:.2f}ms")
            print(f"  Throughput: {result.throughput_ops_sec:,.0f} ops/sec")
            if result.latencies_ms:
                print(f"  Latency (p50): {result.percentile(50):.4f}ms")
                print(f"  Latency (p99): {result.percentile(99):.4f}ms")
            if result.error_count:
                print(f"  Errors: {result.error_count}")
            print()

    def _save_results(self) -> None:
        output_data = {
            "timestamp": time.strftime("%Y-%m-%d %H:%M:%S"),
            "results": [r.to_dict() for r in self.results],
        }
        with open(self.output_file, "w") as f:
            json.dump(output_data, f, indent=2)
        print(f"Results saved to {self.output_file}")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="SessionLite expiration benchmark")
    parser.add_argument("--scale", type=float, default=1.0, help="Multiply every workload size")
    parser.add_argument("--output", default="benchmark_results.json")
    args = parser.parse_args()

    BenchmarkSuite(output_file=args.output).run_all(scale=args.scale)
