import asyncio
import time
from collections import Counter

import httpx
import pytest

from checks import Check, status_is
from errors import ConfigurationError, RequestError
from loadgen import FunctionScenario, RequestSpec, SingleRequestScenario
from ramp import Stage, TrafficProfile
from runner import CANCEL_TIMEOUT_S, ExecutorState, RunConfig, TestExecutor, run, run_load_test


def _scenario(url="http://test/", think_time="0.05"):
    return SingleRequestScenario(RequestSpec(url=url), think_time=think_time)


@pytest.mark.asyncio
async def test_flat_run_throughput_matches_pacing(transport):
    config = RunConfig.from_options(
        {"vus": 5, "duration": "500ms"},
        scenario=_scenario(),
        checks=[Check("status was 200", status_is(200))],
        tick_interval_s=0.05,
        grace_period_s=1.0,
        transport=transport,
    )
    executor = TestExecutor(config)
    snap = await executor.run()

    assert executor.state is ExecutorState.COMPLETED
    assert executor.result is snap
    # 5 VUs x (0.5s / 0.05s per iteration)
    assert 25 <= snap.requests <= 60
    assert snap.requests_failed == 0
    assert snap.checks_failed == 0
    assert snap.checks_passed == snap.requests
    assert snap.vus_max == 5
    assert snap.vus == 0
    assert snap.anomalies == ()


@pytest.mark.asyncio
async def test_staged_run_ramps_up_and_down(transport):
    seen_vus = Counter()

    async def record(outcome):
        seen_vus[outcome.vu_id] += 1

    profile = TrafficProfile(stages=(Stage(0.3, 6), Stage(0.3, 0)))
    config = RunConfig(
        profile=profile,
        scenario=_scenario(think_time="0.02"),
        tick_interval_s=0.02,
        grace_period_s=1.0,
        on_outcome=record,
        transport=transport,
    )
    started = time.monotonic()
    snap = await run_load_test(config)
    assert time.monotonic() - started < 2.0
    assert snap.vus_max >= 5
    assert snap.requests > 0
    assert len(seen_vus) == snap.vus_max


@pytest.mark.asyncio
async def test_one_failing_vu_does_not_halt_the_others(transport):
    per_vu = Counter()

    async def body(session):
        path = "/fail" if session.vu_id == 1 else "/"
        await session.get(f"http://test{path}")

    async def record(outcome):
        per_vu[outcome.vu_id] += 1

    config = RunConfig.from_options(
        {"vus": 4, "duration": "400ms"},
        scenario=FunctionScenario(body, think_time="0.02"),
        tick_interval_s=0.05,
        grace_period_s=1.0,
        on_outcome=record,
        transport=transport,
    )
    snap = await run_load_test(config)
    assert set(per_vu) == {1, 2, 3, 4}
    assert per_vu[1] >= 5
    for vu_id in (2, 3, 4):
        assert per_vu[vu_id] >= 5
    assert snap.errors_by_kind == {"connection": per_vu[1]}
    assert snap.requests_failed == per_vu[1]


@pytest.mark.asyncio
async def test_hung_vu_is_forced_out_after_grace_period(transport):
    async def hang(session):
        await session.get("http://test/")
        await asyncio.sleep(60)

    config = RunConfig.from_options(
        {"vus": 2, "duration": "100ms"},
        scenario=FunctionScenario(hang),
        tick_interval_s=0.05,
        grace_period_s=0.2,
        transport=transport,
    )
    started = time.monotonic()
    snap = await run_load_test(config)
    elapsed = time.monotonic() - started

    assert elapsed < 0.1 + 0.2 + 1.0
    assert snap.grace_period_exceeded == 2
    assert {anomaly.vu_id for anomaly in snap.anomalies} == {1, 2}
    assert snap.iterations_interrupted == 2
    assert snap.requests == 2


@pytest.mark.asyncio
async def test_slow_cleanup_after_cancel_does_not_extend_the_drain(transport):
    async def slow_cleanup(session):
        try:
            await asyncio.sleep(60)
        finally:
            await asyncio.sleep(3)

    config = RunConfig.from_options(
        {"vus": 1, "duration": "100ms"},
        scenario=FunctionScenario(slow_cleanup),
        tick_interval_s=0.05,
        grace_period_s=0.2,
        transport=transport,
    )
    executor = TestExecutor(config)
    started = time.monotonic()
    snap = await executor.run()
    elapsed = time.monotonic() - started

    assert executor.state is ExecutorState.COMPLETED
    assert elapsed < 0.1 + 0.2 + CANCEL_TIMEOUT_S + 0.5
    assert snap.grace_period_exceeded == 1
    assert [anomaly.vu_id for anomaly in snap.anomalies] == [1]

    leftovers = [task for task in asyncio.all_tasks() if task.get_name().startswith("vu-")]
    for task in leftovers:
        task.cancel()
    await asyncio.gather(*leftovers, return_exceptions=True)


@pytest.mark.asyncio
@pytest.mark.parametrize("think_time", ["0", "0.0"])
async def test_run_without_think_time_completes(transport, think_time):
    config = RunConfig.from_options(
        {"vus": 2, "duration": "200ms"},
        scenario=_scenario(think_time=think_time),
        tick_interval_s=0.05,
        grace_period_s=1.0,
        transport=transport,
    )
    snap = await asyncio.wait_for(run_load_test(config), timeout=5.0)
    assert snap.requests > 0
    assert snap.requests_failed == 0
    assert snap.vus == 0


@pytest.mark.asyncio
async def test_scenario_failing_without_suspending_still_completes(transport):
    async def refused(session):
        raise RequestError("connection", "connection refused")

    config = RunConfig.from_options(
        {"vus": 2, "duration": "200ms"},
        scenario=FunctionScenario(refused, think_time="0"),
        tick_interval_s=0.05,
        grace_period_s=1.0,
        transport=transport,
    )
    executor = TestExecutor(config)
    snap = await asyncio.wait_for(executor.run(), timeout=5.0)

    assert executor.state is ExecutorState.COMPLETED
    assert snap.iterations > 0
    assert snap.errors_by_kind == {"connection": snap.iterations}
    assert snap.anomalies == ()


@pytest.mark.asyncio
async def test_snapshots_are_monotonic_during_run(transport):
    config = RunConfig.from_options(
        {"vus": 3, "duration": "400ms"},
        scenario=_scenario(think_time="0.01"),
        tick_interval_s=0.05,
        transport=transport,
    )
    executor = TestExecutor(config)
    task = asyncio.create_task(executor.run())
    snapshots = []
    while not task.done():
        snapshots.append(executor.snapshot())
        await asyncio.sleep(0.02)
    final = await task
    snapshots.append(final)

    assert any(snap.requests > 0 for snap in snapshots[:-1])
    for earlier, later in zip(snapshots, snapshots[1:]):
        assert later.requests >= earlier.requests
        assert later.iterations >= earlier.iterations
        assert later.requests_failed >= earlier.requests_failed


@pytest.mark.asyncio
async def test_request_failures_still_return_a_snapshot(transport):
    config = RunConfig.from_options(
        {"vus": 2, "duration": "200ms"},
        scenario=_scenario(url="http://test/missing", think_time="0.02"),
        checks=[Check("status was 200", status_is(200))],
        tick_interval_s=0.05,
        transport=transport,
    )
    snap = await run_load_test(config)
    assert snap.requests > 0
    assert snap.error_rate == 1.0
    assert snap.checks_passed == 0
    assert snap.checks_failed == snap.requests
    assert snap.responses_by_status == {404: snap.requests}


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides",
    [
        {"tick_interval_s": 0},
        {"grace_period_s": -1},
        {"request_timeout_s": 0},
        {"checks": ["status was 200"]},
        {"profile": TrafficProfile(stages=())},
        {"profile": TrafficProfile(stages=(Stage(-1.0, 2),))},
        {"scenario": _scenario(url="")},
    ],
)
async def test_invalid_configuration_fails_before_running(transport, overrides):
    options = {
        "profile": TrafficProfile(vus=1, duration_s=0.1),
        "scenario": _scenario(),
        "transport": transport,
    }
    options.update(overrides)
    executor = TestExecutor(RunConfig(**options))
    with pytest.raises(ConfigurationError):
        await executor.run()
    assert executor.state is ExecutorState.CONFIGURING
    assert executor.snapshot().iterations == 0


@pytest.mark.asyncio
async def test_executor_cannot_be_reused(transport):
    config = RunConfig(
        profile=TrafficProfile(vus=0, duration_s=0.05),
        scenario=_scenario(),
        tick_interval_s=0.01,
        transport=transport,
    )
    executor = TestExecutor(config)
    snap = await executor.run()
    assert snap.iterations == 0
    with pytest.raises(RuntimeError):
        await executor.run()


def test_blocking_run(transport):
    config = RunConfig.from_options(
        {"vus": 1, "duration": "100ms"},
        scenario=_scenario(think_time="0.02"),
        tick_interval_s=0.02,
        transport=transport,
    )
    snap = run(config)
    assert snap.iterations >= 2
    assert snap.requests_failed == 0


def test_describe_reports_resolved_profile():
    config = RunConfig.from_options(
        {"stages": [{"duration": "30s", "target": 20}]},
        scenario=_scenario(think_time="1"),
        checks=[Check("status was 200", status_is(200))],
    )
    described = config.describe()
    assert described["profile"] == {"stages": [{"duration_s": 30.0, "target": 20}]}
    assert described["checks"] == ["status was 200"]
    assert described["think_time"] == "1"
