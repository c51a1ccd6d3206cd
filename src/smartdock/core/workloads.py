"""Workload actions and per-workload serialization.

Every start/stop/restart issued by the schedule engine, the wake-up
orchestrator or the operator surface goes through ``WorkloadController`` so
that at most one mutating call is in flight for a given container id.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from enum import Enum
from typing import AsyncIterator, Optional

from pydantic import BaseModel, Field

from smartdock.core.errors import AdapterError
from smartdock.core.events import EventBus, EventType
from smartdock.core.runtime import (
    COMPOSE_SERVICE_LABEL,
    RuntimeAdapter,
    WorkloadDetail,
    WorkloadSummary,
)

logger = logging.getLogger(__name__)


class WorkloadAction(str, Enum):
    START = "start"
    STOP = "stop"
    RESTART = "restart"


ACTION_EVENTS = {
    WorkloadAction.START: EventType.WORKLOAD_STARTED,
    WorkloadAction.STOP: EventType.WORKLOAD_STOPPED,
    WorkloadAction.RESTART: EventType.WORKLOAD_RESTARTED,
}


class WorkloadController:
    """Issues runtime actions, one at a time per workload id."""

    def __init__(self, runtime: RuntimeAdapter, bus: EventBus):
        self.runtime = runtime
        self.bus = bus
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    @property
    def active_locks(self) -> int:
        """Workload ids with a holder or waiter on their mutex."""
        return len(self._locks)

    @asynccontextmanager
    async def lock(self, workload_id: str) -> AsyncIterator[None]:
        """Hold the mutex guarding mutating calls for one workload.

        The mutex is dropped once nobody holds or waits for it.
        """
        lock = self._locks.get(workload_id)
        if lock is None:
            lock = self._locks[workload_id] = asyncio.Lock()
        self._lock_users[workload_id] = self._lock_users.get(workload_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[workload_id] -= 1
            if self._lock_users[workload_id] == 0:
                del self._lock_users[workload_id]
                del self._locks[workload_id]

    async def perform(self, workload_id: str, action: WorkloadAction) -> None:
        """Run an action under the workload's lock and announce it."""
        async with self.lock(workload_id):
            await self.perform_locked(workload_id, action)

    async def perform_locked(self, workload_id: str, action: WorkloadAction) -> None:
        """Run an action; the caller must already hold ``lock(workload_id)``."""
        call = getattr(self.runtime, action.value)
        logger.info(f"Container {workload_id[:12]}: {action.value}")
        await call(workload_id)
        self.bus.emit(ACTION_EVENTS[action], id=workload_id)

    async def start(self, workload_id: str) -> None:
        await self.perform(workload_id, WorkloadAction.START)

    async def stop(self, workload_id: str) -> None:
        await self.perform(workload_id, WorkloadAction.STOP)

    async def restart(self, workload_id: str) -> None:
        await self.perform(workload_id, WorkloadAction.RESTART)

    async def list_workloads(self) -> list[WorkloadSummary]:
        return await self.runtime.list()

    async def describe_workloads(self) -> list[WorkloadDetail]:
        """Inspect every container for the dashboard listing, sorted by name."""
        summaries = await self.runtime.list()
        results = await asyncio.gather(
            *(self.runtime.inspect(w.id) for w in summaries), return_exceptions=True
        )
        details = []
        for summary, result in zip(summaries, results):
            if isinstance(result, AdapterError):
                # Removed between list and inspect
                logger.warning(f"Could not inspect {summary.name}: {result.message}")
                result = WorkloadDetail(**summary.model_dump())
            elif isinstance(result, BaseException):
                raise result
            details.append(result)
        return sorted(details, key=lambda d: d.name)

    async def members_of(self, group: str) -> list[WorkloadSummary]:
        """Containers belonging to a compose project."""
        return [w for w in await self.runtime.list() if w.group == group]


# =============================================================================
# Stacks (compose projects)
# =============================================================================


class StackService(BaseModel):
    id: str
    name: str
    image: str
    status: str


class Stack(BaseModel):
    """Containers grouped by their compose project label."""

    id: str
    name: str
    description: str
    status: str = "stopped"  # running | partial | stopped
    services: list[StackService] = Field(default_factory=list)
    running_services: int = 0
    total_services: int = 0


def group_stacks(workloads: list[WorkloadSummary]) -> list[Stack]:
    """Group containers into compose stacks, sorted by project name."""
    stacks: dict[str, Stack] = {}
    for workload in workloads:
        project = workload.group
        if not project:
            continue
        stack = stacks.get(project)
        if stack is None:
            stack = stacks[project] = Stack(
                id=project,
                name=project,
                description=f"Docker Compose stack: {project}",
            )
        stack.services.append(
            StackService(
                id=workload.id,
                name=workload.labels.get(COMPOSE_SERVICE_LABEL, workload.name),
                image=workload.image,
                status=workload.state.value,
            )
        )
        stack.total_services += 1
        if workload.running:
            stack.running_services += 1

    for stack in stacks.values():
        if stack.running_services == stack.total_services:
            stack.status = "running"
        elif stack.running_services > 0:
            stack.status = "partial"
        else:
            stack.status = "stopped"

    return [stacks[name] for name in sorted(stacks)]
