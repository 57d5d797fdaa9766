from __future__ import annotations

from typing import Optional


class LoadTestError(Exception):
    """Base class for load test engine errors."""


class ConfigurationError(LoadTestError):
    """Raised when a traffic profile, scenario or run option is invalid."""


class RequestError(LoadTestError):
    """Raised by a transport or scenario body when a request cannot complete.

    The VU loop converts it into a recorded outcome; it never stops the VU.
    """

    def __init__(self, kind: str, message: str) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message


class CheckFailure(LoadTestError):
    """Raised by a check predicate to fail with a descriptive message."""


class GracePeriodExceeded(LoadTestError):
    def __init__(self, vu_id: int, grace_period_s: float, iteration: Optional[int] = None) -> None:
        super().__init__(
            f"VU {vu_id} did not stop within the {grace_period_s:g}s grace period"
            + (f" (iteration {iteration})" if iteration is not None else "")
        )
        self.vu_id = vu_id
        self.grace_period_s = grace_period_s
        self.iteration = iteration
