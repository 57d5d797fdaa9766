from __future__ import annotations

import abc
import enum
import random
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Optional, Sequence

import httpx

from errors import ConfigurationError, RequestError


def now_unix_ms() -> int:
    return int(time.time() * 1000)


class ErrorKind(str, enum.Enum):
    TIMEOUT = "timeout"
    CONNECTION = "connection"
    PROTOCOL = "protocol"
    SCENARIO = "scenario"
    INTERRUPTED = "interrupted"


class ThinkTime:
    """Think-time sampler in seconds.

    ``spec`` is either a fixed number of seconds or one of
    ``uniform:<min>:<max>``, ``normal:<mean>:<std>:<min>:<max>`` and
    ``lognormal:<mean>:<std>:<min>:<max>``.
    """

    def __init__(self, spec: str = "0") -> None:
        self.spec = str(spec).strip()
        self._sampler = self._build_sampler(self.spec)

    @classmethod
    def parse(cls, spec: Any) -> "ThinkTime":
        if isinstance(spec, ThinkTime):
            return spec
        return cls(str(spec))

    def _build_sampler(self, spec: str) -> Callable[[random.Random], float]:
        if ":" not in spec:
            value = _parse_seconds(spec)
            if value < 0:
                raise ConfigurationError(f"think time must be >= 0, got {value}")
            return lambda _rng: value

        parts = spec.split(":")
        dist = parts[0].lower()
        if dist == "uniform":
            if len(parts) != 3:
                raise ConfigurationError(
                    f"Invalid think time: {spec}. Expected uniform:<min>:<max>."
                )
            lower = _parse_seconds(parts[1])
            upper = _parse_seconds(parts[2])
            _check_bounds(spec, lower, upper)
            return lambda rng: rng.uniform(lower, upper)

        if len(parts) != 5:
            raise ConfigurationError(
                f"Invalid think time distribution: {spec}. "
                "Expected uniform:<min>:<max>, normal:<mean>:<std>:<min>:<max> or "
                "lognormal:<mean>:<std>:<min>:<max>."
            )
        mean = _parse_seconds(parts[1])
        std = _parse_seconds(parts[2])
        lower = _parse_seconds(parts[3])
        upper = _parse_seconds(parts[4])
        if std < 0:
            raise ConfigurationError(f"think time std must be >= 0, got {std}")
        _check_bounds(spec, lower, upper)

        if dist == "normal":
            return lambda rng: min(max(rng.gauss(mean, std), lower), upper)
        if dist == "lognormal":
            return lambda rng: min(max(rng.lognormvariate(mean, std), lower), upper)
        raise ConfigurationError(f"Unsupported think time distribution kind: {dist}")

    def sample(self, rng: random.Random) -> float:
        return max(0.0, float(self._sampler(rng)))

    def __repr__(self) -> str:
        return f"ThinkTime({self.spec!r})"


def _parse_seconds(value: str) -> float:
    try:
        return float(value)
    except ValueError as exc:
        raise ConfigurationError(f"Invalid number of seconds: {value!r}") from exc


def _check_bounds(spec: str, lower: float, upper: float) -> None:
    if lower < 0 or upper < 0 or lower > upper:
        raise ConfigurationError(
            f"think time bounds must satisfy 0 <= min <= max, got {spec}"
        )


@dataclass(frozen=True)
class RequestSpec:
    url: str
    method: str = "GET"
    name: Optional[str] = None
    headers: Mapping[str, str] = field(default_factory=dict)
    params: Mapping[str, Any] = field(default_factory=dict)
    json: Any = None
    content: Optional[bytes] = None
    timeout_s: Optional[float] = None

    @property
    def label(self) -> str:
        return self.name or f"{self.method.upper()} {self.url}"


@dataclass(frozen=True)
class RequestResult:
    name: str
    method: str
    url: str
    status: Optional[int]
    latency_ms: float
    error: Optional[ErrorKind] = None
    error_message: Optional[str] = None
    bytes_received: int = 0
    start_time_unix_ms: int = 0

    @property
    def failed(self) -> bool:
        if self.error is not None:
            return True
        return self.status is None or not (200 <= self.status < 400)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["error"] = self.error.value if self.error else None
        payload["failed"] = self.failed
        return payload


@dataclass(frozen=True)
class IterationOutcome:
    requests: tuple[RequestResult, ...]
    elapsed_ms: float
    error: Optional[ErrorKind] = None
    error_message: Optional[str] = None
    vu_id: int = 0
    iteration: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "vu_id": self.vu_id,
            "iteration": self.iteration,
            "elapsed_ms": self.elapsed_ms,
            "error": self.error.value if self.error else None,
            "error_message": self.error_message,
            "requests": [request.to_dict() for request in self.requests],
        }


def classify_http_error(exc: Exception) -> ErrorKind:
    if isinstance(exc, httpx.TimeoutException):
        return ErrorKind.TIMEOUT
    if isinstance(exc, httpx.NetworkError):
        return ErrorKind.CONNECTION
    if isinstance(exc, RequestError):
        try:
            return ErrorKind(exc.kind)
        except ValueError:
            return ErrorKind.PROTOCOL
    return ErrorKind.PROTOCOL


async def execute_request(
    client: httpx.AsyncClient,
    request: RequestSpec,
    timeout_s: Optional[float] = None,
) -> RequestResult:
    """Issue one request and return its outcome; transport failures never raise."""
    status: Optional[int] = None
    error: Optional[ErrorKind] = None
    error_text: Optional[str] = None
    bytes_received = 0
    effective_timeout = request.timeout_s if request.timeout_s is not None else timeout_s
    options: dict[str, Any] = {}
    if effective_timeout is not None:
        options["timeout"] = effective_timeout
    if request.headers:
        options["headers"] = dict(request.headers)
    if request.params:
        options["params"] = dict(request.params)
    if request.json is not None:
        options["json"] = request.json
    if request.content is not None:
        options["content"] = request.content

    start_time_ms = now_unix_ms()
    started = time.perf_counter()
    try:
        response = await client.request(request.method.upper(), request.url, **options)
        status = int(response.status_code)
        bytes_received = len(response.content)
    except httpx.HTTPError as exc:
        error = classify_http_error(exc)
        error_text = str(exc) or exc.__class__.__name__
    except RequestError as exc:
        error = classify_http_error(exc)
        error_text = exc.message
    latency_ms = (time.perf_counter() - started) * 1000.0

    return RequestResult(
        name=request.label,
        method=request.method.upper(),
        url=request.url,
        status=status,
        latency_ms=latency_ms,
        error=error,
        error_message=error_text,
        bytes_received=bytes_received,
        start_time_unix_ms=start_time_ms,
    )


class Session:
    """Request primitive handed to scenario bodies; collects every result."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        rng: random.Random,
        timeout_s: Optional[float],
        vu_id: int = 0,
        iteration: int = 0,
    ) -> None:
        self.client = client
        self.rng = rng
        self.timeout_s = timeout_s
        self.vu_id = vu_id
        self.iteration = iteration
        self.results: list[RequestResult] = []

    async def request(self, method: str, url: str, **options: Any) -> RequestResult:
        spec = RequestSpec(url=url, method=method, **options)
        result = await execute_request(self.client, spec, timeout_s=self.timeout_s)
        self.results.append(result)
        return result

    async def get(self, url: str, **options: Any) -> RequestResult:
        return await self.request("GET", url, **options)

    async def post(self, url: str, **options: Any) -> RequestResult:
        return await self.request("POST", url, **options)


class Scenario(abc.ABC):
    """A repeatable unit of work executed once per VU iteration."""

    name: str = "default"

    def __init__(self, think_time: Any = "0") -> None:
        self.think_time = ThinkTime.parse(think_time)

    @abc.abstractmethod
    async def run(self, session: Session) -> None:
        """Issue the iteration's requests through ``session``."""

    def validate(self) -> None:
        pass


class SingleRequestScenario(Scenario):
    def __init__(self, request: RequestSpec, think_time: Any = "0") -> None:
        super().__init__(think_time)
        self.request = request
        self.name = request.label

    def validate(self) -> None:
        if not self.request.url:
            raise ConfigurationError("Scenario request needs a url")

    async def run(self, session: Session) -> None:
        result = await execute_request(session.client, self.request, timeout_s=session.timeout_s)
        session.results.append(result)


class RequestSequenceScenario(Scenario):
    def __init__(
        self,
        requests: Sequence[RequestSpec],
        think_time: Any = "0",
        stop_on_failure: bool = False,
        name: str = "sequence",
    ) -> None:
        super().__init__(think_time)
        self.requests = tuple(requests)
        self.stop_on_failure = stop_on_failure
        self.name = name

    def validate(self) -> None:
        if not self.requests:
            raise ConfigurationError("Request sequence scenario needs at least one request")
        for index, request in enumerate(self.requests):
            if not request.url:
                raise ConfigurationError(f"requests[{index}] needs a url")

    async def run(self, session: Session) -> None:
        for spec in self.requests:
            result = await execute_request(session.client, spec, timeout_s=session.timeout_s)
            session.results.append(result)
            if self.stop_on_failure and result.failed:
                break


class FunctionScenario(Scenario):
    """Wraps ``async def body(session)`` for custom request flows."""

    def __init__(
        self,
        fn: Callable[[Session], Awaitable[None]],
        think_time: Any = "0",
        name: Optional[str] = None,
    ) -> None:
        super().__init__(think_time)
        self.fn = fn
        self.name = name or getattr(fn, "__name__", "function")

    def validate(self) -> None:
        if not callable(self.fn):
            raise ConfigurationError("Function scenario needs a callable body")

    async def run(self, session: Session) -> None:
        await self.fn(session)
