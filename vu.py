from __future__ import annotations

import asyncio
import enum
import logging
import random
import time
from typing import Awaitable, Callable, Optional, Sequence

import httpx

from checks import Check, evaluate_checks
from errors import RequestError
from loadgen import ErrorKind, IterationOutcome, Scenario, Session, classify_http_error
from metrics import MetricsAggregator

logger = logging.getLogger(__name__)

OutcomeHook = Callable[[IterationOutcome], Awaitable[None]]


class VUState(str, enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


async def interruptible_sleep(stop_event: asyncio.Event, delay_s: float) -> bool:
    """Sleep up to ``delay_s``; return True if ``stop_event`` fired first."""
    if delay_s <= 0:
        # Yield even with no think time so one VU cannot starve the loop.
        await asyncio.sleep(0)
        return stop_event.is_set()
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=delay_s)
    except asyncio.TimeoutError:
        return False
    return True


async def run_iteration(
    vu_id: int,
    iteration: int,
    scenario: Scenario,
    session: Session,
) -> IterationOutcome:
    """Run one scenario iteration; only cancellation propagates."""
    error: Optional[ErrorKind] = None
    error_text: Optional[str] = None
    started = time.perf_counter()
    try:
        await scenario.run(session)
    except (RequestError, httpx.HTTPError) as exc:
        error = classify_http_error(exc)
        error_text = str(exc) or exc.__class__.__name__
    except Exception as exc:  # noqa: BLE001
        logger.debug("VU %d iteration %d raised", vu_id, iteration, exc_info=True)
        error = ErrorKind.SCENARIO
        error_text = f"{exc.__class__.__name__}: {exc}"
    elapsed_ms = (time.perf_counter() - started) * 1000.0
    return IterationOutcome(
        requests=tuple(session.results),
        elapsed_ms=elapsed_ms,
        error=error,
        error_message=error_text,
        vu_id=vu_id,
        iteration=iteration,
    )


class VirtualUser:
    def __init__(
        self,
        vu_id: int,
        scenario: Scenario,
        checks: Sequence[Check],
        client: httpx.AsyncClient,
        aggregator: MetricsAggregator,
        rng: random.Random,
        timeout_s: Optional[float] = None,
        on_outcome: Optional[OutcomeHook] = None,
    ) -> None:
        self.id = vu_id
        self.scenario = scenario
        self.checks = tuple(checks)
        self.client = client
        self.aggregator = aggregator
        self.rng = rng
        self.timeout_s = timeout_s
        self.on_outcome = on_outcome
        self.state = VUState.IDLE
        self.iterations = 0
        self.stop_event = asyncio.Event()
        self.task: Optional[asyncio.Task[None]] = None

    def start(self) -> asyncio.Task[None]:
        self.task = asyncio.create_task(self.run(), name=f"vu-{self.id}")
        return self.task

    def request_stop(self) -> None:
        if self.state in (VUState.IDLE, VUState.RUNNING):
            self.state = VUState.STOPPING
        self.stop_event.set()

    @property
    def done(self) -> bool:
        return self.task is not None and self.task.done()

    async def _record(self, outcome: IterationOutcome) -> None:
        # Checks judge completed iterations only.
        if outcome.error is ErrorKind.INTERRUPTED:
            results = []
        else:
            results = evaluate_checks(self.checks, outcome)
        self.aggregator.record(outcome, results)
        if self.on_outcome is not None:
            try:
                await self.on_outcome(outcome)
            except Exception:  # noqa: BLE001
                logger.warning("VU %d outcome hook failed", self.id, exc_info=True)

    async def run(self) -> None:
        if self.state is VUState.IDLE:
            self.state = VUState.RUNNING
        logger.debug("VU %d started", self.id)
        try:
            while not self.stop_event.is_set():
                self.iterations += 1
                session = Session(
                    client=self.client,
                    rng=self.rng,
                    timeout_s=self.timeout_s,
                    vu_id=self.id,
                    iteration=self.iterations,
                )
                started = time.perf_counter()
                try:
                    outcome = await run_iteration(
                        vu_id=self.id,
                        iteration=self.iterations,
                        scenario=self.scenario,
                        session=session,
                    )
                except asyncio.CancelledError:
                    await self._record(
                        IterationOutcome(
                            requests=tuple(session.results),
                            elapsed_ms=(time.perf_counter() - started) * 1000.0,
                            error=ErrorKind.INTERRUPTED,
                            error_message="iteration cancelled",
                            vu_id=self.id,
                            iteration=self.iterations,
                        )
                    )
                    raise
                await self._record(outcome)

                delay_s = self.scenario.think_time.sample(self.rng)
                if await interruptible_sleep(self.stop_event, delay_s):
                    break
        finally:
            self.state = VUState.STOPPED
            logger.debug("VU %d stopped after %d iterations", self.id, self.iterations)


class VUPool:
    """VU handles keyed by id; mutated only by the controlling executor.

    Shrinking stops the newest VUs first. Stopped VUs move to ``retiring``
    until their task finishes its current iteration.
    """

    def __init__(self, factory: Callable[[int], VirtualUser]) -> None:
        self._factory = factory
        self._next_id = 1
        self.active: dict[int, VirtualUser] = {}
        self.retiring: dict[int, VirtualUser] = {}

    def __len__(self) -> int:
        return len(self.active)

    def scale_to(self, target: int) -> tuple[int, int]:
        """Start or stop VUs to reach ``target``; return (started, stopped)."""
        self.reap()
        started = 0
        stopped = 0
        while len(self.active) < target:
            vu = self._factory(self._next_id)
            self._next_id += 1
            self.active[vu.id] = vu
            vu.start()
            started += 1
        if len(self.active) > target:
            newest_first = sorted(self.active, reverse=True)
            for vu_id in newest_first[: len(self.active) - target]:
                vu = self.active.pop(vu_id)
                vu.request_stop()
                self.retiring[vu_id] = vu
                stopped += 1
        return started, stopped

    def reap(self) -> None:
        for vu_id in [vu_id for vu_id, vu in self.retiring.items() if vu.done]:
            self.retiring.pop(vu_id)

    def stop_all(self) -> list[VirtualUser]:
        for vu_id in list(self.active):
            vu = self.active.pop(vu_id)
            vu.request_stop()
            self.retiring[vu_id] = vu
        self.reap()
        return list(self.retiring.values())
