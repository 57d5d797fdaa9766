from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Mapping, Optional

from errors import CheckFailure, ConfigurationError
from loadgen import IterationOutcome, RequestResult

logger = logging.getLogger(__name__)

REQUEST_SCOPE = "request"
ITERATION_SCOPE = "iteration"

Predicate = Callable[[Any], bool]


@dataclass(frozen=True)
class CheckResult:
    name: str
    passed: bool
    message: Optional[str] = None


@dataclass(frozen=True)
class Check:
    """Named assertion over a RequestResult (``request`` scope) or IterationOutcome."""

    name: str
    predicate: Predicate
    scope: str = REQUEST_SCOPE

    def __post_init__(self) -> None:
        if not self.name:
            raise ConfigurationError("Check name cannot be empty")
        if not callable(self.predicate):
            raise ConfigurationError(f"Check '{self.name}' predicate is not callable")
        if self.scope not in (REQUEST_SCOPE, ITERATION_SCOPE):
            raise ConfigurationError(
                f"Check '{self.name}' scope must be '{REQUEST_SCOPE}' or '{ITERATION_SCOPE}'"
            )


def evaluate(name: str, predicate: Predicate, subject: Any) -> CheckResult:
    """Evaluate one predicate; never raises."""
    try:
        passed = bool(predicate(subject))
    except (CheckFailure, AssertionError) as exc:
        return CheckResult(name=name, passed=False, message=str(exc) or None)
    except Exception as exc:  # noqa: BLE001
        logger.debug("check %r raised %s", name, exc.__class__.__name__, exc_info=True)
        return CheckResult(name=name, passed=False, message=f"{exc.__class__.__name__}: {exc}")
    return CheckResult(name=name, passed=passed)


def evaluate_checks(checks: Iterable[Check], outcome: IterationOutcome) -> list[CheckResult]:
    results: list[CheckResult] = []
    for check in checks:
        if check.scope == ITERATION_SCOPE:
            results.append(evaluate(check.name, check.predicate, outcome))
            continue
        for request in outcome.requests:
            results.append(evaluate(check.name, check.predicate, request))
    return results


def checks_from_mapping(mapping: Mapping[str, Predicate], scope: str = REQUEST_SCOPE) -> list[Check]:
    return [Check(name=name, predicate=predicate, scope=scope) for name, predicate in mapping.items()]


def status_is(expected: int) -> Predicate:
    def predicate(result: RequestResult) -> bool:
        return result.status == expected

    return predicate


def status_in(*expected: int) -> Predicate:
    allowed = frozenset(expected)

    def predicate(result: RequestResult) -> bool:
        return result.status in allowed

    return predicate


def latency_below(limit_ms: float) -> Predicate:
    def predicate(result: RequestResult) -> bool:
        if result.error is not None:
            raise CheckFailure(f"request failed with {result.error.value}")
        return result.latency_ms < limit_ms

    return predicate


def no_error(subject: Any) -> bool:
    return subject.error is None
