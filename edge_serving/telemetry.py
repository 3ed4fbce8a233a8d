"""
Usage telemetry for the edge serving runtime

Thread-safe request/token counters with an exponential moving average of
latency plus a rolling window for percentile reporting.

All mutations happen under one lock so the moving average and the counters
it is derived alongside are updated together (no lost updates between
concurrent workers).
"""

import threading
from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, Dict, List

# Weight of the newest sample in the latency moving average
EMA_WEIGHT = 0.01


@dataclass
class UsageSnapshot:
    """Point-in-time copy of UsageStats counters"""

    total_requests: int
    failed_requests: int
    prompt_tokens: int
    completion_tokens: int
    avg_latency_ms: float

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


class UsageStats:
    """
    Linearizable usage counters

    Features:
    - Request and token totals
    - EMA latency: avg = avg * 0.99 + elapsed * 0.01
    - Percentile latency tracking (p50, p95, p99) over a rolling window
    """

    def __init__(self, window_size: int = 1000):
        self._lock = threading.Lock()
        self._total_requests = 0
        self._failed_requests = 0
        self._prompt_tokens = 0
        self._completion_tokens = 0
        self._avg_latency_ms = 0.0
        self._latencies: Deque[float] = deque(maxlen=window_size)

    def record(
        self,
        elapsed_ms: float,
        prompt_tokens: int = 0,
        completion_tokens: int = 0,
        success: bool = True,
    ) -> None:
        """
        Record one finished request

        Args:
            elapsed_ms: Wall time of the request in milliseconds
            prompt_tokens: Tokens consumed from the prompt
            completion_tokens: Tokens produced
            success: Whether the request succeeded
        """
        with self._lock:
            self._total_requests += 1
            self._prompt_tokens += prompt_tokens
            self._completion_tokens += completion_tokens
            if not success:
                self._failed_requests += 1
            self._avg_latency_ms = self._avg_latency_ms * (1.0 - EMA_WEIGHT) + elapsed_ms * EMA_WEIGHT
            self._latencies.append(elapsed_ms)

    def snapshot(self) -> UsageSnapshot:
        with self._lock:
            return UsageSnapshot(
                total_requests=self._total_requests,
                failed_requests=self._failed_requests,
                prompt_tokens=self._prompt_tokens,
                completion_tokens=self._completion_tokens,
                avg_latency_ms=self._avg_latency_ms,
            )

    def get_report(self) -> Dict[str, Any]:
        """
        Get usage report

        Returns:
            Dictionary with totals, EMA latency and (with >= 10 samples) percentiles
        """
        with self._lock:
            latencies = sorted(self._latencies)
            report: Dict[str, Any] = {
                "total_requests": self._total_requests,
                "failed_requests": self._failed_requests,
                "prompt_tokens": self._prompt_tokens,
                "completion_tokens": self._completion_tokens,
                "total_tokens": self._prompt_tokens + self._completion_tokens,
                "avg_processing_time_ms": self._avg_latency_ms,
            }

        if len(latencies) >= 10:
            report["latency_ms"] = {
                "p50": self._percentile(latencies, 0.50),
                "p95": self._percentile(latencies, 0.95),
                "p99": self._percentile(latencies, 0.99),
            }
        return report

    @staticmethod
    def _percentile(sorted_values: List[float], percentile: float) -> float:
        """
        Calculate percentile from sorted values

        Args:
            sorted_values: Sorted list of values
            percentile: Percentile to calculate (0.0-1.0)

        Returns:
            Percentile value
        """
        if not sorted_values:
            return 0.0

        n = len(sorted_values)
        index = min(int(percentile * n), n - 1)
        return sorted_values[index]

    def reset(self) -> None:
        """Reset all statistics"""
        with self._lock:
            self._total_requests = 0
            self._failed_requests = 0
            self._prompt_tokens = 0
            self._completion_tokens = 0
            self._avg_latency_ms = 0.0
            self._latencies.clear()
