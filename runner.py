from __future__ import annotations

import asyncio
import enum
import logging
import math
import random
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional, Sequence

import httpx

from checks import Check
from errors import ConfigurationError, GracePeriodExceeded
from loadgen import Scenario
from metrics import MetricsAggregator, MetricsSnapshot
from ramp import TrafficProfile, target_vus
from vu import OutcomeHook, VirtualUser, VUPool, VUState

logger = logging.getLogger(__name__)

# How long cancelled VUs get to unwind before they are abandoned.
CANCEL_TIMEOUT_S = 0.5


@dataclass
class RunConfig:
    profile: TrafficProfile
    scenario: Scenario
    checks: Sequence[Check] = field(default_factory=list)
    tick_interval_s: float = 1.0
    grace_period_s: float = 30.0
    request_timeout_s: Optional[float] = 60.0
    seed: int = 42
    max_connections: Optional[int] = None
    on_outcome: Optional[OutcomeHook] = None
    transport: Optional[httpx.AsyncBaseTransport] = None

    @classmethod
    def from_options(
        cls,
        options: Mapping[str, Any],
        scenario: Scenario,
        checks: Sequence[Check] = (),
        **overrides: Any,
    ) -> "RunConfig":
        return cls(
            profile=TrafficProfile.from_options(options),
            scenario=scenario,
            checks=list(checks),
            **overrides,
        )

    def describe(self) -> dict[str, Any]:
        profile = self.profile
        return {
            "profile": (
                {
                    "stages": [
                        {"duration_s": stage.duration_s, "target": stage.target}
                        for stage in profile.stages
                    ]
                }
                if profile.is_staged
                else {"vus": profile.vus, "duration_s": profile.duration_s}
            ),
            "scenario": self.scenario.name,
            "think_time": self.scenario.think_time.spec,
            "checks": [check.name for check in self.checks],
            "tick_interval_s": self.tick_interval_s,
            "grace_period_s": self.grace_period_s,
            "request_timeout_s": self.request_timeout_s,
            "seed": self.seed,
        }


class ExecutorState(str, enum.Enum):
    CONFIGURING = "configuring"
    RUNNING = "running"
    DRAINING = "draining"
    COMPLETED = "completed"


def validate_config(config: RunConfig) -> None:
    if not isinstance(config.profile, TrafficProfile):
        raise ConfigurationError("profile must be a TrafficProfile")
    config.profile.validate()
    if not isinstance(config.scenario, Scenario):
        raise ConfigurationError("scenario must be a Scenario")
    config.scenario.validate()
    for check in config.checks:
        if not isinstance(check, Check):
            raise ConfigurationError(f"checks must contain Check objects, got {check!r}")
    if not math.isfinite(config.tick_interval_s) or config.tick_interval_s <= 0:
        raise ConfigurationError(f"tick interval must be > 0, got {config.tick_interval_s}")
    if not math.isfinite(config.grace_period_s) or config.grace_period_s < 0:
        raise ConfigurationError(f"grace period must be >= 0, got {config.grace_period_s}")
    if config.request_timeout_s is not None and (
        not math.isfinite(config.request_timeout_s) or config.request_timeout_s <= 0
    ):
        raise ConfigurationError(
            f"request timeout must be > 0 when set, got {config.request_timeout_s}"
        )
    if config.max_connections is not None and config.max_connections <= 0:
        raise ConfigurationError("max connections must be > 0 when set")


class TestExecutor:
    """Drives one test through Configuring -> Running -> Draining -> Completed."""

    __test__ = False

    def __init__(self, config: RunConfig, clock: Callable[[], float] = time.monotonic) -> None:
        self.config = config
        self.state = ExecutorState.CONFIGURING
        self.aggregator = MetricsAggregator(clock=clock)
        self.result: Optional[MetricsSnapshot] = None
        self._clock = clock
        self._pool: Optional[VUPool] = None

    @property
    def active_vus(self) -> int:
        return len(self._pool) if self._pool is not None else 0

    def snapshot(self) -> MetricsSnapshot:
        return self.aggregator.snapshot()

    def _new_vu(self, vu_id: int, client: httpx.AsyncClient) -> VirtualUser:
        return VirtualUser(
            vu_id=vu_id,
            scenario=self.config.scenario,
            checks=self.config.checks,
            client=client,
            aggregator=self.aggregator,
            rng=random.Random(self.config.seed + (vu_id * 971)),
            timeout_s=self.config.request_timeout_s,
            on_outcome=self.config.on_outcome,
        )

    def _client_limits(self) -> httpx.Limits:
        max_connections = self.config.max_connections or max(
            self.config.profile.max_vus * 2, 64
        )
        return httpx.Limits(
            max_connections=max_connections,
            max_keepalive_connections=max(max_connections // 2, 32),
        )

    async def run(self) -> MetricsSnapshot:
        if self.state is not ExecutorState.CONFIGURING:
            raise RuntimeError(f"executor already used (state={self.state.value})")
        validate_config(self.config)

        client_options: dict[str, Any] = {"limits": self._client_limits()}
        if self.config.transport is not None:
            client_options["transport"] = self.config.transport

        async with httpx.AsyncClient(**client_options) as client:
            pool = VUPool(factory=lambda vu_id: self._new_vu(vu_id, client))
            self._pool = pool
            try:
                await self._run_ramp(pool)
            finally:
                await self._drain(pool)

        self.state = ExecutorState.COMPLETED
        self.result = self.aggregator.snapshot()
        logger.info(
            "test completed: %d iterations, %d requests (%d failed), %d anomalies",
            self.result.iterations,
            self.result.requests,
            self.result.requests_failed,
            len(self.result.anomalies),
        )
        return self.result

    async def _run_ramp(self, pool: VUPool) -> None:
        profile = self.config.profile
        tick_s = float(self.config.tick_interval_s)
        total_s = profile.total_duration_s

        self.state = ExecutorState.RUNNING
        self.aggregator.mark_started()
        started_at = self._clock()
        logger.info(
            "test running: %s profile, %.1fs, up to %d VUs",
            "staged" if profile.is_staged else "flat",
            total_s,
            profile.max_vus,
        )

        while True:
            elapsed_s = max(0.0, self._clock() - started_at)
            target = target_vus(profile, elapsed_s)
            if target == 0 and elapsed_s >= total_s:
                break
            spawned, stopped = pool.scale_to(target)
            self.aggregator.set_vus(len(pool))
            if spawned or stopped:
                logger.info(
                    "t=%.1fs target=%d active=%d (+%d/-%d)",
                    elapsed_s,
                    target,
                    len(pool),
                    spawned,
                    stopped,
                )
            else:
                logger.debug("t=%.1fs target=%d active=%d", elapsed_s, target, len(pool))
            await asyncio.sleep(min(tick_s, max(total_s - elapsed_s, 0.0)))

    async def _drain(self, pool: VUPool) -> None:
        self.state = ExecutorState.DRAINING
        vus = pool.stop_all()
        self.aggregator.set_vus(0)
        logger.info("draining %d VUs (grace period %.1fs)", len(vus), self.config.grace_period_s)
        forced = await _wait_for_vus(vus, grace_period_s=self.config.grace_period_s)
        for vu in forced:
            anomaly = GracePeriodExceeded(vu.id, self.config.grace_period_s, vu.iterations)
            logger.warning("%s; forcing termination", anomaly)
            self.aggregator.record_anomaly("grace_period_exceeded", str(anomaly), vu_id=vu.id)
        pool.reap()


async def _wait_for_vus(vus: list[VirtualUser], grace_period_s: float) -> list[VirtualUser]:
    """Wait for VUs to stop; cancel the ones still running after the grace period.

    Cancelled VUs get ``CANCEL_TIMEOUT_S`` to unwind. Any still running after
    that are abandoned so the drain stays bounded.
    """
    tasks = {vu.task: vu for vu in vus if vu.task is not None}
    if not tasks:
        return []
    _done, pending = await asyncio.wait(tasks, timeout=max(0.0, grace_period_s))
    forced = [tasks[task] for task in pending]
    for task in pending:
        task.cancel()
    if pending:
        _unwound, stuck = await asyncio.wait(pending, timeout=CANCEL_TIMEOUT_S)
        for task in stuck:
            logger.error(
                "VU %d did not unwind within %.1fs of cancellation; abandoning it",
                tasks[task].id,
                CANCEL_TIMEOUT_S,
            )
    finished = [task for task in tasks if task.done()]
    results = await asyncio.gather(*finished, return_exceptions=True)
    for task, result in zip(finished, results):
        vu = tasks[task]
        vu.state = VUState.STOPPED
        if isinstance(result, Exception):
            logger.error("VU %d exited with %r", vu.id, result)
    return forced


async def run_load_test(config: RunConfig) -> MetricsSnapshot:
    return await TestExecutor(config).run()


def run(config: RunConfig) -> MetricsSnapshot:
    """Blocking entry point: execute the full test lifecycle."""
    return asyncio.run(run_load_test(config))
