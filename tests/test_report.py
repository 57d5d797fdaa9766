import json

import pytest
from prometheus_client.parser import text_string_to_metric_families

from checks import CheckResult
from loadgen import ErrorKind, IterationOutcome, RequestResult
from metrics import MetricsAggregator
from report import AsyncJSONLWriter, format_summary, render_prometheus, write_summary_json


def _snapshot():
    aggregator = MetricsAggregator()
    ok = RequestResult("GET /", "GET", "http://test/", 200, 12.0, bytes_received=10)
    slow = RequestResult("GET /", "GET", "http://test/", 200, 250.0, bytes_received=10)
    failed = RequestResult("GET /", "GET", "http://test/", None, 3.0, error=ErrorKind.TIMEOUT)
    aggregator.record(IterationOutcome((ok,), 1012.0), [CheckResult("status was 200", True)])
    aggregator.record(IterationOutcome((slow,), 1250.0), [CheckResult("status was 200", True)])
    aggregator.record(IterationOutcome((failed,), 1003.0), [CheckResult("status was 200", False)])
    aggregator.set_vus(2)
    aggregator.record_anomaly("grace_period_exceeded", "VU 2 did not stop within the 30s grace period", 2)
    return aggregator.snapshot()


def test_format_summary_lists_checks_and_metrics():
    text = format_summary(_snapshot())
    assert "✗ status was 200  (2 passed, 1 failed)" in text
    assert "http_reqs" in text
    assert "http_req_failed        33.33%" in text
    assert "errors{timeout}" in text
    assert "vus_max                2" in text
    assert "! grace_period_exceeded" in text


def test_write_summary_json(tmp_path):
    path = tmp_path / "summary.json"
    write_summary_json(path, _snapshot(), resolved_config={"profile": {"vus": 2}})
    payload = json.loads(path.read_text(encoding="utf-8"))
    assert payload["config"] == {"profile": {"vus": 2}}
    metrics = payload["metrics"]
    assert metrics["requests"] == 3
    assert metrics["requests_failed"] == 1
    assert metrics["checks"]["status was 200"] == {"passed": 2, "failed": 1}
    assert metrics["responses_by_status"] == {"200": 2}
    assert metrics["request_latency_ms"]["max"] == 250.0


def test_render_prometheus_roundtrips_through_parser():
    text = render_prometheus(_snapshot()).decode("utf-8")
    samples = {}
    for family in text_string_to_metric_families(text):
        for sample in family.samples:
            key = (sample.name, tuple(sorted(sample.labels.items())))
            samples[key] = sample.value

    assert samples[("vu_loadtest_http_reqs_total", ())] == 3
    assert samples[("vu_loadtest_http_req_failed_total", ())] == 1
    assert samples[("vu_loadtest_checks_total", (("check", "status was 200"), ("result", "pass")))] == 2
    assert samples[("vu_loadtest_errors_total", (("kind", "timeout"),))] == 1
    assert samples[("vu_loadtest_http_req_duration_seconds_count", ())] == 3
    assert samples[("vu_loadtest_http_req_duration_seconds_sum", ())] == pytest.approx(0.265)
    assert samples[("vu_loadtest_http_req_duration_seconds_bucket", (("le", "+Inf"),))] == 3
    assert samples[("vu_loadtest_vus_max", ())] == 2
    assert samples[("vu_loadtest_anomalies_total", ())] == 1


@pytest.mark.asyncio
async def test_jsonl_writer_streams_outcomes(tmp_path):
    path = tmp_path / "iterations.jsonl"
    writer = AsyncJSONLWriter(path)
    request = RequestResult("GET /", "GET", "http://test/", 200, 5.0)
    await writer.write_outcome(IterationOutcome((request,), 7.5, vu_id=3, iteration=1))
    await writer.write_outcome(IterationOutcome((), 1.0, error=ErrorKind.SCENARIO, vu_id=3, iteration=2))
    writer.close()

    rows = [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]
    assert [row["iteration"] for row in rows] == [1, 2]
    assert rows[0]["requests"][0]["status"] == 200
    assert rows[0]["requests"][0]["failed"] is False
    assert rows[1]["error"] == "scenario"
