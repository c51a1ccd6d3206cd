"""Shared pytest fixtures for SmartDock tests.

Provides an in-memory container runtime and a manual clock so scheduling
and wake-up behaviour can be tested without Docker or real waiting.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from smartdock.config import Settings
from smartdock.core.errors import AdapterError
from smartdock.core.events import EventBus, EventType
from smartdock.core.proxy import MemoryArtifactSink, ProxyRuleCompiler
from smartdock.core.runtime import (
    HealthStatus,
    WorkloadDetail,
    WorkloadState,
    WorkloadSummary,
)
from smartdock.core.scheduler import ScheduleEngine
from smartdock.core.wakeup import WakeOrchestrator
from smartdock.core.workloads import WorkloadController


class FakeRuntime:
    """In-memory RuntimeAdapter recording every call."""

    def __init__(self):
        self.workloads: dict[str, WorkloadDetail] = {}
        self.calls: list[tuple[str, str]] = []
        self.failures: dict[tuple[str, str], str] = {}
        self.inspect_failures = 0
        self.start_delay = 0.0
        self.starting_polls: dict[str, int] = {}

    def add(
        self,
        workload_id: str,
        name: str,
        state: WorkloadState = WorkloadState.STOPPED,
        labels: Optional[dict[str, str]] = None,
        health: Optional[HealthStatus] = None,
    ) -> WorkloadDetail:
        detail = WorkloadDetail(
            id=workload_id,
            name=name,
            image=f"{name}:latest",
            state=state,
            labels=labels or {},
            health=health,
        )
        self.workloads[workload_id] = detail
        return detail

    def fail(self, action: str, workload_id: str, message: str = "daemon error") -> None:
        self.failures[(action, workload_id)] = message

    def becomes_healthy_after(self, workload_id: str, polls: int) -> None:
        """Report ``starting`` health for the first ``polls`` inspects while running."""
        self.starting_polls[workload_id] = polls

    def count(self, action: str, workload_id: Optional[str] = None) -> int:
        return sum(
            1 for a, w in self.calls
            if a == action and (workload_id is None or w == workload_id)
        )

    def _check(self, action: str, workload_id: str) -> WorkloadDetail:
        self.calls.append((action, workload_id))
        if (action, workload_id) in self.failures:
            raise AdapterError(self.failures[(action, workload_id)])
        if workload_id not in self.workloads:
            raise AdapterError(f"No such container: {workload_id}")
        return self.workloads[workload_id]

    async def list(self) -> list[WorkloadSummary]:
        return [WorkloadSummary(**w.model_dump()) for w in self.workloads.values()]

    async def inspect(self, workload_id: str) -> WorkloadDetail:
        if self.inspect_failures > 0:
            self.inspect_failures -= 1
            self.calls.append(("inspect", workload_id))
            raise AdapterError("inspect timed out")
        detail = self._check("inspect", workload_id)
        if detail.state == WorkloadState.RUNNING and workload_id in self.starting_polls:
            remaining = self.starting_polls[workload_id]
            if remaining > 0:
                self.starting_polls[workload_id] = remaining - 1
                detail.health = HealthStatus.STARTING
            else:
                detail.health = HealthStatus.HEALTHY
        return detail.model_copy()

    async def start(self, workload_id: str) -> None:
        if self.start_delay:
            await asyncio.sleep(self.start_delay)
        self._check("start", workload_id).state = WorkloadState.RUNNING

    async def stop(self, workload_id: str) -> None:
        self._check("stop", workload_id).state = WorkloadState.STOPPED

    async def restart(self, workload_id: str) -> None:
        self._check("restart", workload_id).state = WorkloadState.RUNNING


class ManualClock:
    """Clock whose time only moves when a test calls ``advance``."""

    def __init__(self, start: datetime):
        self._now = start
        self._waiters: list[tuple[datetime, asyncio.Future]] = []

    def now(self) -> datetime:
        return self._now

    async def sleep(self, seconds: float) -> None:
        deadline = self._now + timedelta(seconds=seconds)
        future = asyncio.get_running_loop().create_future()
        entry = (deadline, future)
        self._waiters.append(entry)
        try:
            await future
        finally:
            if entry in self._waiters:
                self._waiters.remove(entry)

    async def advance(self, **delta) -> None:
        self._now += timedelta(**delta)
        for deadline, future in list(self._waiters):
            if deadline <= self._now and not future.done():
                future.set_result(None)
        await settle()


async def settle(rounds: int = 50) -> None:
    """Let ready tasks run to completion."""
    for _ in range(rounds):
        await asyncio.sleep(0)


def events_of(subscription, event_type: EventType) -> list:
    return [e for e in subscription.drain() if e.type == event_type]


@pytest.fixture
def runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture
def bus() -> EventBus:
    return EventBus(default_maxsize=1000)


@pytest.fixture
def workloads(runtime, bus) -> WorkloadController:
    return WorkloadController(runtime, bus)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(datetime(2026, 1, 5, 12, 3, 20, tzinfo=timezone.utc))


@pytest.fixture
def engine(workloads, bus, clock) -> ScheduleEngine:
    return ScheduleEngine(workloads, bus, clock=clock)


@pytest.fixture
def sink() -> MemoryArtifactSink:
    return MemoryArtifactSink()


@pytest.fixture
def compiler(bus, sink) -> ProxyRuleCompiler:
    return ProxyRuleCompiler(bus, sink=sink)


@pytest.fixture
def orchestrator(workloads, bus) -> WakeOrchestrator:
    return WakeOrchestrator(workloads, bus)


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        state_path=tmp_path / "state",
        proxy_config_path=tmp_path / "caddy" / "Caddyfile",
        main_domain="example.com",
        wake_timeout_ms=2000,
        wake_poll_interval_ms=10,
    )
