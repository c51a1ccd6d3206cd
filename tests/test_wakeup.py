"""Tests for the smart wake-up orchestrator."""

import asyncio

import pytest

from smartdock.core.errors import (
    AdapterError,
    HealthCheckError,
    TargetNotFoundError,
    WakeCancelledError,
    WakeTimeoutError,
)
from smartdock.core.events import EventType
from smartdock.core.runtime import HealthStatus, WorkloadState, WorkloadSummary
from smartdock.core.wakeup import WakeOptions, WakeState, resolve_target

FAST = WakeOptions(timeout_ms=2000, poll_interval_ms=10, max_retries=3)


def progress_states(subscription) -> list[str]:
    return [
        e.payload["session"]["state"]
        for e in subscription.drain()
        if e.type == EventType.WAKE_PROGRESS
    ]


class TestResolve:
    """Identifier to container resolution."""

    def test_domain_label_wins_over_name(self):
        workloads = [
            WorkloadSummary(id="1", name="app", state=WorkloadState.STOPPED),
            WorkloadSummary(
                id="2",
                name="frontend",
                state=WorkloadState.STOPPED,
                labels={"smartdock.domain": "app.example.com"},
            ),
        ]
        assert resolve_target("app.example.com", workloads).id == "2"

    def test_first_dns_label_matches_name(self):
        workloads = [WorkloadSummary(id="1", name="stopped-service", state=WorkloadState.STOPPED)]
        assert resolve_target("Stopped-Service.example.com", workloads).id == "1"
        assert resolve_target("stopped-service", workloads).id == "1"

    def test_no_match(self):
        with pytest.raises(TargetNotFoundError):
            resolve_target("ghost.example.com", [])


class TestWake:
    """Wake-up sessions end to end against the fake runtime."""

    @pytest.mark.asyncio
    async def test_wakes_stopped_service_until_healthy(self, orchestrator, runtime, bus):
        runtime.add("c1", "stopped-service")
        runtime.becomes_healthy_after("c1", 2)
        sub = bus.subscribe([EventType.WAKE_PROGRESS])

        outcome = await orchestrator.wake("stopped-service.example.com", FAST)

        assert outcome.state == WakeState.READY
        assert outcome.started is True
        assert outcome.workload_id == "c1"
        assert progress_states(sub) == [
            "resolving",
            "starting",
            "health_checking",
            "ready",
        ]
        assert runtime.count("start", "c1") == 1
        # one inspect before starting, then three readiness polls
        assert runtime.count("inspect", "c1") == 4

    @pytest.mark.asyncio
    async def test_already_running_skips_start(self, orchestrator, runtime, bus):
        runtime.add("c1", "web", state=WorkloadState.RUNNING)
        sub = bus.subscribe([EventType.WAKE_PROGRESS])

        outcome = await orchestrator.wake("web.example.com", FAST)

        assert outcome.state == WakeState.READY
        assert outcome.started is False
        assert runtime.count("start") == 0
        assert progress_states(sub) == ["resolving", "already_running", "ready"]

    @pytest.mark.asyncio
    async def test_unknown_target(self, orchestrator, bus):
        sub = bus.subscribe([EventType.WAKE_PROGRESS])

        with pytest.raises(TargetNotFoundError):
            await orchestrator.wake("nothing.example.com", FAST)

        assert progress_states(sub) == ["resolving", "failed"]

    @pytest.mark.asyncio
    async def test_start_failure_is_fatal(self, orchestrator, runtime, bus):
        runtime.add("c1", "web")
        runtime.fail("start", "c1", "image missing")
        sub = bus.subscribe([EventType.WAKE_PROGRESS])

        with pytest.raises(AdapterError, match="image missing"):
            await orchestrator.wake("web", FAST)

        assert progress_states(sub)[-1] == "failed"
        assert runtime.count("start") == 1

    @pytest.mark.asyncio
    async def test_timeout_leaves_container_running(self, orchestrator, runtime, bus):
        runtime.add("c1", "web", health=HealthStatus.UNHEALTHY)
        sub = bus.subscribe([EventType.WAKE_PROGRESS])
        options = WakeOptions(timeout_ms=150, poll_interval_ms=20, max_retries=3)

        loop = asyncio.get_running_loop()
        began = loop.time()
        with pytest.raises(WakeTimeoutError) as excinfo:
            await orchestrator.wake("web", options)
        elapsed_ms = (loop.time() - began) * 1000

        assert isinstance(excinfo.value, TimeoutError)
        assert excinfo.value.outcome.state == WakeState.FAILED
        assert elapsed_ms < 150 + 20 + 100
        assert progress_states(sub)[-1] == "failed"
        assert runtime.workloads["c1"].state == WorkloadState.RUNNING
        assert runtime.count("stop") == 0

    @pytest.mark.asyncio
    async def test_transient_inspect_failures_are_retried(self, orchestrator, runtime):
        runtime.add("c1", "web", state=WorkloadState.STOPPED)
        # the pre-start inspect succeeds, the next two polls fail
        original = runtime.inspect
        calls = {"n": 0}

        async def flaky(workload_id):
            calls["n"] += 1
            if calls["n"] in (2, 3):
                raise AdapterError("inspect timed out")
            return await original(workload_id)

        runtime.inspect = flaky

        outcome = await orchestrator.wake("web", FAST)

        assert outcome.state == WakeState.READY

    @pytest.mark.asyncio
    async def test_consecutive_inspect_failures_fail_session(self, orchestrator, runtime, bus):
        runtime.add("c1", "web", state=WorkloadState.STOPPED)
        original = runtime.inspect
        calls = {"n": 0}

        async def broken_after_start(workload_id):
            calls["n"] += 1
            if calls["n"] > 1:
                raise AdapterError("daemon unreachable")
            return await original(workload_id)

        runtime.inspect = broken_after_start
        sub = bus.subscribe([EventType.WAKE_PROGRESS])

        with pytest.raises(HealthCheckError):
            await orchestrator.wake("web", FAST)

        assert calls["n"] == 1 + FAST.max_retries
        assert progress_states(sub)[-2:] == ["health_checking", "failed"]

    @pytest.mark.asyncio
    async def test_concurrent_wakes_start_once(self, orchestrator, runtime):
        runtime.add("c1", "web")
        runtime.start_delay = 0.05
        runtime.becomes_healthy_after("c1", 1)

        first, second = await asyncio.gather(
            orchestrator.wake("web.example.com", FAST),
            orchestrator.wake("web", FAST),
        )

        assert first.state == second.state == WakeState.READY
        assert runtime.count("start", "c1") == 1
        assert sorted([first.started, second.started]) == [False, True]

    @pytest.mark.asyncio
    async def test_cancel_event_stops_polling(self, orchestrator, runtime, bus):
        runtime.add("c1", "web", health=HealthStatus.STARTING)
        runtime.becomes_healthy_after("c1", 10_000)
        cancel = asyncio.Event()
        options = WakeOptions(timeout_ms=5000, poll_interval_ms=1000, max_retries=3)

        async def leave_soon():
            await asyncio.sleep(0.05)
            cancel.set()

        loop = asyncio.get_running_loop()
        began = loop.time()
        asyncio.create_task(leave_soon())
        with pytest.raises(WakeCancelledError):
            await orchestrator.wake("web", options, cancel=cancel)

        assert loop.time() - began < 0.5
        assert runtime.workloads["c1"].state == WorkloadState.RUNNING

    @pytest.mark.asyncio
    async def test_task_cancellation_publishes_failure(self, orchestrator, runtime, bus):
        runtime.add("c1", "web")
        runtime.becomes_healthy_after("c1", 10_000)
        sub = bus.subscribe([EventType.WAKE_PROGRESS])

        task = asyncio.create_task(orchestrator.wake("web", FAST))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert progress_states(sub)[-1] == "failed"
        assert runtime.count("stop") == 0

    @pytest.mark.asyncio
    async def test_deadline_covers_resolving(self, orchestrator, runtime, bus):
        runtime.add("c1", "web")
        original = runtime.list

        async def slow_list():
            await asyncio.sleep(1)
            return await original()

        runtime.list = slow_list
        sub = bus.subscribe([EventType.WAKE_PROGRESS])
        options = WakeOptions(timeout_ms=100, poll_interval_ms=10)

        loop = asyncio.get_running_loop()
        began = loop.time()
        with pytest.raises(WakeTimeoutError):
            await orchestrator.wake("web", options)

        assert (loop.time() - began) * 1000 < 100 + 10 + 100
        assert progress_states(sub) == ["resolving", "failed"]
        assert runtime.count("start") == 0
