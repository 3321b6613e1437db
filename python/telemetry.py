"""
Runtime telemetry

Lightweight in-process metrics for generation, model loads, downloads and
errors. Latencies are kept in a rolling window for percentile reports.
"""

import random
import threading
from collections import Counter, deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, Optional

_MAX_SAMPLES = 1000


@dataclass
class TelemetryStats:
    """Statistics for telemetry tracking"""
    generate_calls: int = 0
    total_tokens: int = 0
    total_generate_time_ms: float = 0.0
    generate_latencies_ms: Deque[float] = field(default_factory=lambda: deque(maxlen=_MAX_SAMPLES))
    ttft_ms: Deque[float] = field(default_factory=lambda: deque(maxlen=_MAX_SAMPLES))
    load_times_ms: Deque[float] = field(default_factory=lambda: deque(maxlen=_MAX_SAMPLES))
    download_times_ms: Deque[float] = field(default_factory=lambda: deque(maxlen=_MAX_SAMPLES))
    errors: Counter = field(default_factory=Counter)


class RuntimeTelemetry:
    """
    Telemetry collector shared by the runtime components

    Features:
    - Percentile latency tracking (p50, p95, p99)
    - Rolling window (1000 samples per series)
    - Configurable sampling rate for generation events
    """

    def __init__(self, enabled: bool = True, sampling_rate: float = 1.0):
        """
        Args:
            enabled: Enable/disable telemetry
            sampling_rate: Probability of recording a generation event (0.01-1.0)
        """
        self.enabled = enabled
        self.sampling_rate = max(0.01, min(1.0, sampling_rate))
        self.stats = TelemetryStats()
        self._lock = threading.Lock()

    def record_generate(self, duration_s: float, tokens: int, ttft_s: Optional[float] = None) -> None:
        if not self.enabled:
            return
        if self.sampling_rate < 1.0 and random.random() > self.sampling_rate:
            return

        with self._lock:
            self.stats.generate_calls += 1
            self.stats.total_tokens += tokens
            self.stats.total_generate_time_ms += duration_s * 1000
            self.stats.generate_latencies_ms.append(duration_s * 1000)
            if ttft_s is not None:
                self.stats.ttft_ms.append(ttft_s * 1000)

    def record_load(self, duration_s: float) -> None:
        if self.enabled:
            with self._lock:
                self.stats.load_times_ms.append(duration_s * 1000)

    def record_download(self, duration_s: float) -> None:
        if self.enabled:
            with self._lock:
                self.stats.download_times_ms.append(duration_s * 1000)

    def record_error(self, kind: str = "generation") -> None:
        if self.enabled:
            with self._lock:
                self.stats.errors[kind] += 1

    def get_report(self) -> Dict[str, Any]:
        """Performance report including latency percentiles"""
        if not self.enabled:
            return {"enabled": False}

        with self._lock:
            stats = self.stats
            generation: Dict[str, Any] = {"calls": stats.generate_calls, "total_tokens": stats.total_tokens}
            if stats.generate_calls:
                generation["avg_tokens_per_call"] = stats.total_tokens / stats.generate_calls
                generation["latency_ms"] = self._summarize(stats.generate_latencies_ms)
                generation["ttft_ms"] = self._summarize(stats.ttft_ms)
                generation["tokens_per_second"] = (
                    stats.total_tokens / (stats.total_generate_time_ms / 1000.0)
                    if stats.total_generate_time_ms > 0 else 0.0
                )

            return {
                "enabled": True,
                "sampling_rate": self.sampling_rate,
                "generation": generation,
                "model_loads": self._summarize(stats.load_times_ms),
                "downloads": self._summarize(stats.download_times_ms),
                "errors": {"total": sum(stats.errors.values()), **dict(stats.errors)},
            }

    @classmethod
    def _summarize(cls, samples) -> Dict[str, Any]:
        values = sorted(samples)
        if not values:
            return {"count": 0}
        summary = {
            "count": len(values),
            "mean": sum(values) / len(values),
            "min": values[0],
            "max": values[-1],
        }
        if len(values) >= 10:
            summary["p50"] = cls._percentile(values, 0.50)
            summary["p95"] = cls._percentile(values, 0.95)
            summary["p99"] = cls._percentile(values, 0.99)
        return summary

    @staticmethod
    def _percentile(sorted_values, percentile: float) -> float:
        if not sorted_values:
            return 0.0
        index = min(int(percentile * len(sorted_values)), len(sorted_values) - 1)
        return sorted_values[index]

    def reset(self) -> None:
        with self._lock:
            self.stats = TelemetryStats()
