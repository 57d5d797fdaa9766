"""Thread-safe metric accumulation for a load test run.

``MetricsAggregator.record`` is called by every VU; ``snapshot`` copies the
counters under the same lock, so a snapshot waits at most for one in-flight
``record`` call and never observes a counter going backward.

Latencies go into ``LatencyHistogram``, a fixed set of log-spaced millisecond
buckets. Quantiles are estimated by interpolating inside the bucket that
holds the requested rank, the way Prometheus' ``histogram_quantile`` does, so
memory stays constant regardless of run length at the cost of approximate
percentiles.
"""
from __future__ import annotations

import math
import threading
import time
from collections import Counter
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Iterable, Optional

from checks import CheckResult
from loadgen import ErrorKind, IterationOutcome

QUANTILES = (0.5, 0.9, 0.95, 0.99)


def _default_bounds(start_ms: float = 0.1, factor: float = 1.15, limit_ms: float = 600_000.0) -> tuple[float, ...]:
    bounds: list[float] = []
    value = start_ms
    while value < limit_ms:
        bounds.append(round(value, 4))
        value *= factor
    bounds.append(limit_ms)
    return tuple(bounds)


DEFAULT_BUCKET_BOUNDS_MS = _default_bounds()


class LatencyHistogram:
    """Fixed-bucket histogram; not synchronized, the aggregator holds the lock."""

    def __init__(self, bounds: tuple[float, ...] = DEFAULT_BUCKET_BOUNDS_MS) -> None:
        if not bounds or list(bounds) != sorted(bounds):
            raise ValueError("Histogram bounds must be a non-empty ascending sequence")
        self.bounds = bounds
        # Last slot is the +Inf overflow bucket.
        self.counts = [0] * (len(bounds) + 1)
        self.count = 0
        self.sum = 0.0
        self.min: Optional[float] = None
        self.max: Optional[float] = None

    def observe(self, value_ms: float) -> None:
        value_ms = max(0.0, float(value_ms))
        self.counts[self._bucket_index(value_ms)] += 1
        self.count += 1
        self.sum += value_ms
        self.min = value_ms if self.min is None else min(self.min, value_ms)
        self.max = value_ms if self.max is None else max(self.max, value_ms)

    def _bucket_index(self, value_ms: float) -> int:
        low, high = 0, len(self.bounds)
        while low < high:
            mid = (low + high) // 2
            if value_ms <= self.bounds[mid]:
                high = mid
            else:
                low = mid + 1
        return low

    def quantile(self, q: float) -> Optional[float]:
        if self.count == 0:
            return None
        assert self.min is not None and self.max is not None
        if q <= 0:
            return self.min
        if q >= 1:
            return self.max
        rank = q * self.count
        cumulative = 0
        for index, bucket_count in enumerate(self.counts):
            if bucket_count == 0:
                continue
            if cumulative + bucket_count >= rank:
                if index >= len(self.bounds):
                    return self.max
                lower = self.bounds[index - 1] if index > 0 else 0.0
                upper = self.bounds[index]
                estimate = lower + (upper - lower) * ((rank - cumulative) / bucket_count)
                return min(max(estimate, self.min), self.max)
            cumulative += bucket_count
        return self.max

    def cumulative_buckets(self) -> list[tuple[float, int]]:
        result: list[tuple[float, int]] = []
        cumulative = 0
        for bound, bucket_count in zip(self.bounds, self.counts):
            cumulative += bucket_count
            result.append((bound, cumulative))
        result.append((math.inf, self.count))
        return result

    def distribution(self) -> "Distribution":
        percentiles = {f"p{_quantile_label(q)}": self.quantile(q) for q in QUANTILES}
        return Distribution(
            count=self.count,
            sum=self.sum,
            min=self.min,
            max=self.max,
            mean=(self.sum / self.count) if self.count else None,
            p50=percentiles["p50"],
            p90=percentiles["p90"],
            p95=percentiles["p95"],
            p99=percentiles["p99"],
            buckets=tuple(self.cumulative_buckets()),
        )


def _quantile_label(q: float) -> str:
    return f"{q * 100:g}".replace(".", "")


@dataclass(frozen=True)
class Distribution:
    count: int = 0
    sum: float = 0.0
    min: Optional[float] = None
    max: Optional[float] = None
    mean: Optional[float] = None
    p50: Optional[float] = None
    p90: Optional[float] = None
    p95: Optional[float] = None
    p99: Optional[float] = None
    buckets: tuple[tuple[float, int], ...] = ()

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload.pop("buckets")
        return payload


@dataclass(frozen=True)
class Anomaly:
    kind: str
    vu_id: Optional[int]
    message: str
    elapsed_s: float


@dataclass(frozen=True)
class CheckTally:
    passed: int = 0
    failed: int = 0


@dataclass(frozen=True)
class MetricsSnapshot:
    window_start: float
    window_end: float
    iterations: int = 0
    iterations_interrupted: int = 0
    iteration_errors: int = 0
    requests: int = 0
    requests_failed: int = 0
    checks_passed: int = 0
    checks_failed: int = 0
    checks: dict[str, CheckTally] = field(default_factory=dict)
    errors_by_kind: dict[str, int] = field(default_factory=dict)
    responses_by_status: dict[int, int] = field(default_factory=dict)
    bytes_received: int = 0
    request_latency: Distribution = field(default_factory=Distribution)
    iteration_duration: Distribution = field(default_factory=Distribution)
    vus: int = 0
    vus_max: int = 0
    anomalies: tuple[Anomaly, ...] = ()

    @property
    def elapsed_s(self) -> float:
        return max(self.window_end - self.window_start, 0.0)

    @property
    def request_rate(self) -> float:
        if self.elapsed_s <= 0:
            return 0.0
        return self.requests / self.elapsed_s

    @property
    def iteration_rate(self) -> float:
        if self.elapsed_s <= 0:
            return 0.0
        return self.iterations / self.elapsed_s

    @property
    def error_rate(self) -> float:
        if self.requests == 0:
            return 0.0
        return self.requests_failed / self.requests

    @property
    def grace_period_exceeded(self) -> int:
        return sum(1 for anomaly in self.anomalies if anomaly.kind == "grace_period_exceeded")

    def to_dict(self) -> dict[str, Any]:
        return {
            "elapsed_s": self.elapsed_s,
            "iterations": self.iterations,
            "iterations_interrupted": self.iterations_interrupted,
            "iteration_errors": self.iteration_errors,
            "iteration_rate": self.iteration_rate,
            "requests": self.requests,
            "requests_failed": self.requests_failed,
            "request_rate": self.request_rate,
            "error_rate": self.error_rate,
            "checks_passed": self.checks_passed,
            "checks_failed": self.checks_failed,
            "checks": {name: asdict(tally) for name, tally in self.checks.items()},
            "errors_by_kind": dict(self.errors_by_kind),
            "responses_by_status": {str(status): count for status, count in self.responses_by_status.items()},
            "bytes_received": self.bytes_received,
            "request_latency_ms": self.request_latency.to_dict(),
            "iteration_duration_ms": self.iteration_duration.to_dict(),
            "vus": self.vus,
            "vus_max": self.vus_max,
            "anomalies": [asdict(anomaly) for anomaly in self.anomalies],
        }


class MetricsAggregator:
    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._started_at = clock()
        self._iterations = 0
        self._iterations_interrupted = 0
        self._iteration_errors = 0
        self._requests = 0
        self._requests_failed = 0
        self._checks_passed = 0
        self._checks_failed = 0
        self._check_passes: Counter[str] = Counter()
        self._check_failures: Counter[str] = Counter()
        self._errors_by_kind: Counter[str] = Counter()
        self._responses_by_status: Counter[int] = Counter()
        self._bytes_received = 0
        self._request_latency = LatencyHistogram()
        self._iteration_duration = LatencyHistogram()
        self._vus = 0
        self._vus_max = 0
        self._anomalies: list[Anomaly] = []

    def mark_started(self) -> None:
        with self._lock:
            self._started_at = self._clock()

    def record(self, outcome: IterationOutcome, check_results: Iterable[CheckResult] = ()) -> None:
        check_results = list(check_results)
        with self._lock:
            self._iterations += 1
            if outcome.error is ErrorKind.INTERRUPTED:
                self._iterations_interrupted += 1
            elif outcome.error is not None:
                self._iteration_errors += 1
                self._errors_by_kind[outcome.error.value] += 1
            self._iteration_duration.observe(outcome.elapsed_ms)

            for request in outcome.requests:
                self._requests += 1
                if request.failed:
                    self._requests_failed += 1
                if request.error is not None:
                    self._errors_by_kind[request.error.value] += 1
                if request.status is not None:
                    self._responses_by_status[request.status] += 1
                self._bytes_received += request.bytes_received
                self._request_latency.observe(request.latency_ms)

            for result in check_results:
                if result.passed:
                    self._checks_passed += 1
                    self._check_passes[result.name] += 1
                else:
                    self._checks_failed += 1
                    self._check_failures[result.name] += 1

    def record_anomaly(self, kind: str, message: str, vu_id: Optional[int] = None) -> None:
        with self._lock:
            self._anomalies.append(
                Anomaly(
                    kind=kind,
                    vu_id=vu_id,
                    message=message,
                    elapsed_s=self._clock() - self._started_at,
                )
            )

    def set_vus(self, active: int) -> None:
        with self._lock:
            self._vus = active
            self._vus_max = max(self._vus_max, active)

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            names = set(self._check_passes) | set(self._check_failures)
            return MetricsSnapshot(
                window_start=self._started_at,
                window_end=self._clock(),
                iterations=self._iterations,
                iterations_interrupted=self._iterations_interrupted,
                iteration_errors=self._iteration_errors,
                requests=self._requests,
                requests_failed=self._requests_failed,
                checks_passed=self._checks_passed,
                checks_failed=self._checks_failed,
                checks={
                    name: CheckTally(
                        passed=self._check_passes[name],
                        failed=self._check_failures[name],
                    )
                    for name in sorted(names)
                },
                errors_by_kind=dict(self._errors_by_kind),
                responses_by_status=dict(sorted(self._responses_by_status.items())),
                bytes_received=self._bytes_received,
                request_latency=self._request_latency.distribution(),
                iteration_duration=self._iteration_duration.distribution(),
                vus=self._vus,
                vus_max=self._vus_max,
                anomalies=tuple(self._anomalies),
            )
