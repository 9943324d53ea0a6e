"""
Metrics collection for observability.

Tracks request latency and failures on the host side, plus worker lifecycle
counters (launches, restarts, launch failures, degraded transitions).
"""

import time
from dataclasses import dataclass, field
from typing import Dict, Any
from collections import deque
import threading


@dataclass
class MetricsSnapshot:
    """Point-in-time snapshot of all metrics."""

    # Counters
    requests_total: int = 0
    requests_success: int = 0
    requests_failed: int = 0

    # Latency (milliseconds)
    latency_avg_ms: float = 0.0
    latency_p50_ms: float = 0.0
    latency_p95_ms: float = 0.0
    latency_p99_ms: float = 0.0
    latency_min_ms: float = 0.0
    latency_max_ms: float = 0.0

    # Requests currently waiting for a response (0 or 1)
    in_flight: int = 0

    # Worker lifecycle
    worker_launches: int = 0
    worker_restarts: int = 0
    launch_failures: int = 0
    degraded_count: int = 0
    worker_state: str = "not_started"

    # Timestamp
    timestamp: float = field(default_factory=time.time)


class Metrics:
    """
    Thread-safe metrics collector shared by the supervisor and the client.

    Usage:
        metrics = Metrics()

        start = metrics.start_request()
        # ... round trip ...
        metrics.end_request(start, success=True)

        snapshot = metrics.snapshot()
        print(f"Avg latency: {snapshot.latency_avg_ms}ms")
    """

    def __init__(self, max_latency_samples: int = 1000):
        self.max_latency_samples = max_latency_samples

        self._lock = threading.Lock()
        self._requests_total = 0
        self._requests_success = 0
        self._requests_failed = 0
        self._in_flight = 0

        self._worker_launches = 0
        self._worker_restarts = 0
        self._launch_failures = 0
        self._degraded_count = 0
        self._worker_state = "not_started"

        # Latency samples (circular buffer)
        self._latencies: deque = deque(maxlen=max_latency_samples)

    def start_request(self) -> float:
        """
        Start tracking a request.

        Returns start timestamp for later end_request() call.
        """
        with self._lock:
            self._requests_total += 1
            self._in_flight += 1

        return time.perf_counter()

    def end_request(self, start_time: float, success: bool = True) -> float:
        """
        End tracking a request.

        Returns latency in milliseconds.
        """
        latency_ms = (time.perf_counter() - start_time) * 1000

        with self._lock:
            self._in_flight -= 1

            if success:
                self._requests_success += 1
            else:
                self._requests_failed += 1

            self._latencies.append(latency_ms)

        return latency_ms

    def record_launch(self):
        with self._lock:
            self._worker_launches += 1

    def record_restart(self):
        with self._lock:
            self._worker_restarts += 1

    def record_launch_failure(self):
        with self._lock:
            self._launch_failures += 1

    def record_degraded(self):
        with self._lock:
            self._degraded_count += 1

    def record_state(self, state: str):
        """Record the supervisor's current state name."""
        with self._lock:
            self._worker_state = state

    def snapshot(self) -> MetricsSnapshot:
        """Get a point-in-time snapshot of all metrics."""
        with self._lock:
            latencies = list(self._latencies)

            if latencies:
                sorted_latencies = sorted(latencies)
                n = len(sorted_latencies)
                p50_idx = int(n * 0.50)
                p95_idx = int(n * 0.95)
                p99_idx = int(n * 0.99)

                latency_avg = sum(latencies) / n
                latency_p50 = sorted_latencies[min(p50_idx, n - 1)]
                latency_p95 = sorted_latencies[min(p95_idx, n - 1)]
                latency_p99 = sorted_latencies[min(p99_idx, n - 1)]
                latency_min = sorted_latencies[0]
                latency_max = sorted_latencies[-1]
            else:
                latency_avg = latency_p50 = latency_p95 = latency_p99 = 0.0
                latency_min = latency_max = 0.0

            return MetricsSnapshot(
                requests_total=self._requests_total,
                requests_success=self._requests_success,
                requests_failed=self._requests_failed,
                latency_avg_ms=latency_avg,
                latency_p50_ms=latency_p50,
                latency_p95_ms=latency_p95,
                latency_p99_ms=latency_p99,
                latency_min_ms=latency_min,
                latency_max_ms=latency_max,
                in_flight=self._in_flight,
                worker_launches=self._worker_launches,
                worker_restarts=self._worker_restarts,
                launch_failures=self._launch_failures,
                degraded_count=self._degraded_count,
                worker_state=self._worker_state,
            )

    def reset(self):
        """Reset all counters and samples; the recorded worker state is kept."""
        with self._lock:
            self._requests_total = 0
            self._requests_success = 0
            self._requests_failed = 0
            self._in_flight = 0
            self._worker_launches = 0
            self._worker_restarts = 0
            self._launch_failures = 0
            self._degraded_count = 0
            self._latencies.clear()

    def to_dict(self) -> Dict[str, Any]:
        """Get metrics as a dictionary (for logging/serialization)."""
        snapshot = self.snapshot()
        return {
            "requests": {
                "total": snapshot.requests_total,
                "success": snapshot.requests_success,
                "failed": snapshot.requests_failed,
                "in_flight": snapshot.in_flight,
                "error_rate": (
                    snapshot.requests_failed / snapshot.requests_total
                    if snapshot.requests_total > 0
                    else 0.0
                ),
            },
            "latency_ms": {
                "avg": round(snapshot.latency_avg_ms, 2),
                "p50": round(snapshot.latency_p50_ms, 2),
                "p95": round(snapshot.latency_p95_ms, 2),
                "p99": round(snapshot.latency_p99_ms, 2),
                "min": round(snapshot.latency_min_ms, 2),
                "max": round(snapshot.latency_max_ms, 2),
            },
            "worker": {
                "state": snapshot.worker_state,
                "launches": snapshot.worker_launches,
                "restarts": snapshot.worker_restarts,
                "launch_failures": snapshot.launch_failures,
                "degraded": snapshot.degraded_count,
            },
        }
