from __future__ import annotations

import asyncio
import json
import math
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Optional

from prometheus_client import CollectorRegistry, generate_latest
from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily, HistogramMetricFamily

from loadgen import IterationOutcome
from metrics import Distribution, MetricsSnapshot


class AsyncJSONLWriter:
    def __init__(self, output_path: Path) -> None:
        self.output_path = output_path
        self._file = output_path.open("w", encoding="utf-8", buffering=1)
        self._lock = asyncio.Lock()

    async def write(self, payload: dict[str, Any]) -> None:
        line = json.dumps(payload, ensure_ascii=True)
        async with self._lock:
            self._file.write(line + "\n")

    async def write_outcome(self, outcome: IterationOutcome) -> None:
        await self.write(outcome.to_dict())

    def close(self) -> None:
        self._file.close()


def _fmt(value: Optional[float], digits: int = 2) -> str:
    if value is None or math.isnan(value):
        return "-"
    return f"{value:.{digits}f}"


def _fmt_pct(numerator: int, denominator: int) -> str:
    if denominator <= 0:
        return "0.00%"
    return f"{numerator / denominator * 100.0:.2f}%"


def write_summary_json(
    output_path: Path,
    snapshot: MetricsSnapshot,
    resolved_config: Optional[dict[str, Any]] = None,
) -> None:
    payload: dict[str, Any] = {
        "generated_at_utc": datetime.now(timezone.utc).isoformat(),
        "metrics": snapshot.to_dict(),
    }
    if resolved_config is not None:
        payload["config"] = resolved_config
    output_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")


def _distribution_line(label: str, dist: Distribution) -> str:
    return (
        f"{label:<22} avg={_fmt(dist.mean)}ms min={_fmt(dist.min)}ms "
        f"p50={_fmt(dist.p50)}ms p90={_fmt(dist.p90)}ms p95={_fmt(dist.p95)}ms "
        f"p99={_fmt(dist.p99)}ms max={_fmt(dist.max)}ms"
    )


def format_summary(snapshot: MetricsSnapshot) -> str:
    """End-of-test console summary."""
    lines: list[str] = []
    total_checks = snapshot.checks_passed + snapshot.checks_failed
    if snapshot.checks:
        for name, tally in snapshot.checks.items():
            mark = "✓" if tally.failed == 0 else "✗"
            lines.append(f"  {mark} {name}  ({tally.passed} passed, {tally.failed} failed)")
        lines.append("")
        lines.append(
            f"{'checks':<22} {_fmt_pct(snapshot.checks_passed, total_checks)} "
            f"✓ {snapshot.checks_passed} ✗ {snapshot.checks_failed}"
        )
    lines.append(
        f"{'http_reqs':<22} {snapshot.requests} {_fmt(snapshot.request_rate)}/s"
    )
    lines.append(
        f"{'http_req_failed':<22} {_fmt_pct(snapshot.requests_failed, snapshot.requests)} "
        f"✓ {snapshot.requests_failed} ✗ {snapshot.requests - snapshot.requests_failed}"
    )
    lines.append(_distribution_line("http_req_duration", snapshot.request_latency))
    lines.append(_distribution_line("iteration_duration", snapshot.iteration_duration))
    lines.append(
        f"{'iterations':<22} {snapshot.iterations} {_fmt(snapshot.iteration_rate)}/s"
    )
    if snapshot.iterations_interrupted:
        lines.append(f"{'interrupted':<22} {snapshot.iterations_interrupted}")
    for kind, count in sorted(snapshot.errors_by_kind.items()):
        lines.append(f"{'errors{' + kind + '}':<22} {count}")
    lines.append(f"{'data_received':<22} {snapshot.bytes_received} B")
    lines.append(f"{'vus_max':<22} {snapshot.vus_max}")
    for anomaly in snapshot.anomalies:
        lines.append(f"! {anomaly.kind}: {anomaly.message}")
    return "\n".join(lines) + "\n"


class _SnapshotCollector:
    def __init__(self, snapshot: MetricsSnapshot, namespace: str) -> None:
        self._snapshot = snapshot
        self._namespace = namespace

    def _name(self, suffix: str) -> str:
        return f"{self._namespace}_{suffix}"

    def _histogram(self, suffix: str, documentation: str, dist: Distribution) -> HistogramMetricFamily:
        buckets = [
            ("+Inf" if math.isinf(bound) else repr(bound / 1000.0), float(count))
            for bound, count in dist.buckets
        ]
        if not buckets:
            buckets = [("+Inf", 0.0)]
        return HistogramMetricFamily(
            self._name(suffix),
            documentation,
            buckets=buckets,
            sum_value=dist.sum / 1000.0,
        )

    def collect(self) -> Iterator[Any]:
        snap = self._snapshot
        yield CounterMetricFamily(self._name("iterations"), "Completed VU iterations", value=snap.iterations)
        yield CounterMetricFamily(self._name("http_reqs"), "HTTP requests issued", value=snap.requests)
        yield CounterMetricFamily(
            self._name("http_req_failed"), "HTTP requests that failed", value=snap.requests_failed
        )

        checks = CounterMetricFamily(
            self._name("checks"), "Check evaluations by result", labels=["check", "result"]
        )
        for name, tally in snap.checks.items():
            checks.add_metric([name, "pass"], tally.passed)
            checks.add_metric([name, "fail"], tally.failed)
        yield checks

        errors = CounterMetricFamily(self._name("errors"), "Errors by kind", labels=["kind"])
        for kind, count in sorted(snap.errors_by_kind.items()):
            errors.add_metric([kind], count)
        yield errors

        statuses = CounterMetricFamily(
            self._name("http_responses"), "HTTP responses by status", labels=["status"]
        )
        for status, count in snap.responses_by_status.items():
            statuses.add_metric([str(status)], count)
        yield statuses

        yield self._histogram(
            "http_req_duration_seconds", "HTTP request latency", snap.request_latency
        )
        yield self._histogram(
            "iteration_duration_seconds", "VU iteration duration", snap.iteration_duration
        )
        yield GaugeMetricFamily(self._name("vus_max"), "Peak active VUs", value=snap.vus_max)
        yield CounterMetricFamily(
            self._name("anomalies"), "Recorded run anomalies", value=len(snap.anomalies)
        )


def render_prometheus(snapshot: MetricsSnapshot, namespace: str = "vu_loadtest") -> bytes:
    registry = CollectorRegistry()
    registry.register(_SnapshotCollector(snapshot, namespace))
    return generate_latest(registry)


def write_prometheus(output_path: Path, snapshot: MetricsSnapshot) -> None:
    output_path.write_bytes(render_prometheus(snapshot))
