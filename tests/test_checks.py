import pytest

from checks import (
    ITERATION_SCOPE,
    Check,
    checks_from_mapping,
    evaluate,
    evaluate_checks,
    latency_below,
    no_error,
    status_in,
    status_is,
)
from errors import CheckFailure, ConfigurationError
from loadgen import ErrorKind, IterationOutcome, RequestResult


def _result(status=200, latency_ms=12.0, error=None):
    return RequestResult(
        name="GET http://test/",
        method="GET",
        url="http://test/",
        status=status,
        latency_ms=latency_ms,
        error=error,
    )


def test_status_was_200():
    assert evaluate("status was 200", status_is(200), _result(200)).passed
    failed = evaluate("status was 200", status_is(200), _result(503))
    assert failed.name == "status was 200"
    assert not failed.passed


def test_evaluate_never_raises():
    def boom(_result):
        raise RuntimeError("predicate bug")

    def strict(_result):
        raise CheckFailure("body did not match")

    def asserting(result):
        assert result.status == 201, "expected created"

    crashed = evaluate("boom", boom, _result())
    assert not crashed.passed
    assert "RuntimeError" in crashed.message

    described = evaluate("strict", strict, _result())
    assert not described.passed
    assert described.message == "body did not match"

    asserted = evaluate("asserting", asserting, _result())
    assert not asserted.passed
    assert asserted.message.startswith("expected created")


def test_all_checks_evaluated_even_after_failures():
    outcome = IterationOutcome(requests=(_result(500), _result(200)), elapsed_ms=30.0)
    checks = [
        Check("status was 200", status_is(200)),
        Check("status is 2xx or 5xx", status_in(200, 500)),
        Check("iteration ok", no_error, scope=ITERATION_SCOPE),
    ]
    results = evaluate_checks(checks, outcome)
    assert [(r.name, r.passed) for r in results] == [
        ("status was 200", False),
        ("status was 200", True),
        ("status is 2xx or 5xx", True),
        ("status is 2xx or 5xx", True),
        ("iteration ok", True),
    ]


def test_latency_below_fails_on_transport_error():
    assert evaluate("fast", latency_below(50), _result(latency_ms=10)).passed
    assert not evaluate("fast", latency_below(50), _result(latency_ms=80)).passed
    errored = evaluate("fast", latency_below(50), _result(status=None, error=ErrorKind.TIMEOUT))
    assert not errored.passed
    assert "timeout" in errored.message


def test_checks_from_mapping():
    checks = checks_from_mapping({"status was 200": status_is(200), "no error": no_error})
    assert [check.name for check in checks] == ["status was 200", "no error"]
    assert all(check.scope == "request" for check in checks)


def test_check_rejects_bad_definitions():
    with pytest.raises(ConfigurationError):
        Check("", status_is(200))
    with pytest.raises(ConfigurationError):
        Check("x", "not callable")
    with pytest.raises(ConfigurationError):
        Check("x", no_error, scope="global")
