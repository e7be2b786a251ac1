# app/infra/metrics.py
"""
In-process metrics for deliveries and cache reads.

Metric names used across the app:

    dispatch_calls{kind=markdown|card|image, result=ok|error}
    dispatch_outcomes{result=success|failure}
    dispatch_runs{status=completed|failed|aborted}
    cache_reads{cache=..., result=hit|miss|joined}
    cache_fetch_seconds{cache=...}            (histogram)
    cache_sub_fetch_failures{cache=..., key=...}
    task_writes{op=create|update|delete, result=ok|error}
    http_requests{method=..., status=...}
    http_request_seconds{method=...}         (histogram)
"""
from __future__ import annotations

import time
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, field
from threading import Lock
from typing import Iterator

from app.infra.logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class Histogram:
    """Keeps raw observations; summaries are computed on read."""
    values: list[float] = field(default_factory=list)

    def observe(self, value: float) -> None:
        self.values.append(value)

    def summary(self) -> dict:
        if not self.values:
            return {"count": 0, "min": 0, "max": 0, "avg": 0, "p95": 0}

        ordered = sorted(self.values)
        count = len(ordered)
        p95 = ordered[min(int(count * 0.95), count - 1)]
        return {
            "count": count,
            "min": ordered[0],
            "max": ordered[-1],
            "avg": sum(ordered) / count,
            "p95": p95,
        }


class MetricsCollector:
    """Counters and histograms keyed by ``name{label=value,...}``."""

    def __init__(self):
        self._counters: dict[str, int] = defaultdict(int)
        self._histograms: dict[str, Histogram] = defaultdict(Histogram)
        self._lock = Lock()

    def inc(self, name: str, amount: int = 1, labels: dict | None = None) -> None:
        key = self.key(name, labels)
        with self._lock:
            self._counters[key] += amount

    def observe(self, name: str, value: float, labels: dict | None = None) -> None:
        key = self.key(name, labels)
        with self._lock:
            self._histograms[key].observe(value)

    def counter_value(self, name: str, **labels) -> int:
        with self._lock:
            return self._counters.get(self.key(name, labels or None), 0)

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "counters": dict(self._counters),
                "histograms": {k: h.summary() for k, h in self._histograms.items()},
            }

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._histograms.clear()
        logger.info("Metrics reset")

    @staticmethod
    def key(name: str, labels: dict | None) -> str:
        if not labels:
            return name
        label_str = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
        return f"{name}{{{label_str}}}"


_metrics = MetricsCollector()


def get_metrics_collector() -> MetricsCollector:
    """Get the process-wide metrics collector"""
    return _metrics


def inc_counter(name: str, amount: int = 1, **labels) -> None:
    _metrics.inc(name, amount, labels or None)


def observe_histogram(name: str, value: float, **labels) -> None:
    _metrics.observe(name, value, labels or None)


@contextmanager
def timed(name: str, **labels) -> Iterator[None]:
    """Record the wall-clock duration of the block, also when it raises."""
    start = time.perf_counter()
    try:
        yield
    finally:
        observe_histogram(name, time.perf_counter() - start, **labels)
