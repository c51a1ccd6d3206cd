"""Container runtime adapter.

Uses python-on-whales for Docker API interactions. The rest of the core only
depends on the ``RuntimeAdapter`` protocol so tests can substitute an
in-memory runtime.
"""

import asyncio
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Protocol, runtime_checkable

from pydantic import BaseModel, Field, computed_field
from python_on_whales import DockerClient
from python_on_whales.exceptions import DockerException

from smartdock.core.errors import AdapterError

logger = logging.getLogger(__name__)

# Labels read from containers
DOMAIN_LABEL = "smartdock.domain"
PORT_LABEL = "smartdock.port"
WAKEUP_LABEL = "smartdock.wakeup"
AUTOUPDATE_LABEL = "smartdock.autoupdate"
COMPOSE_PROJECT_LABEL = "com.docker.compose.project"
COMPOSE_SERVICE_LABEL = "com.docker.compose.service"


class WorkloadState(str, Enum):
    RUNNING = "running"
    STOPPED = "stopped"
    PAUSED = "paused"


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    STARTING = "starting"


def format_uptime(started_at: Optional[datetime], now: Optional[datetime] = None) -> str:
    """Render time since start as ``2d 3h``, ``4h 12m`` or ``7m``."""
    if started_at is None:
        return "-"
    now = now or datetime.now(timezone.utc)
    if started_at.tzinfo is None:
        started_at = started_at.replace(tzinfo=timezone.utc)
    seconds = max(int((now - started_at).total_seconds()), 0)

    days = seconds // 86400
    hours = (seconds % 86400) // 3600
    minutes = (seconds % 3600) // 60

    if days > 0:
        return f"{days}d {hours}h"
    if hours > 0:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


class WorkloadSummary(BaseModel):
    """A container as seen by list()."""

    id: str
    name: str
    image: str = ""
    state: WorkloadState
    labels: dict[str, str] = Field(default_factory=dict)

    @property
    def running(self) -> bool:
        return self.state == WorkloadState.RUNNING

    @computed_field
    @property
    def domain(self) -> Optional[str]:
        return self.labels.get(DOMAIN_LABEL)

    @computed_field
    @property
    def group(self) -> Optional[str]:
        return self.labels.get(COMPOSE_PROJECT_LABEL)

    @computed_field
    @property
    def smart_wake_up(self) -> bool:
        return self.labels.get(WAKEUP_LABEL) == "true"

    @computed_field
    @property
    def auto_update(self) -> bool:
        return self.labels.get(AUTOUPDATE_LABEL) == "true"


class WorkloadDetail(WorkloadSummary):
    """A container as seen by inspect()."""

    health: Optional[HealthStatus] = None
    started_at: Optional[datetime] = None
    created: Optional[datetime] = None
    networks: list[str] = Field(default_factory=list)

    @computed_field
    @property
    def uptime(self) -> str:
        return format_uptime(self.started_at) if self.running else "-"

    @property
    def ready(self) -> bool:
        """Running and, when a health check is defined, reporting healthy."""
        if not self.running:
            return False
        return self.health is None or self.health == HealthStatus.HEALTHY


@runtime_checkable
class RuntimeAdapter(Protocol):
    """Operations the core needs from a container runtime."""

    async def list(self) -> list[WorkloadSummary]: ...

    async def inspect(self, workload_id: str) -> WorkloadDetail: ...

    async def start(self, workload_id: str) -> None: ...

    async def stop(self, workload_id: str) -> None: ...

    async def restart(self, workload_id: str) -> None: ...


def _state_of(container) -> WorkloadState:
    state = container.state
    if state.paused:
        return WorkloadState.PAUSED
    if state.running:
        return WorkloadState.RUNNING
    return WorkloadState.STOPPED


def _health_of(container) -> Optional[HealthStatus]:
    health = getattr(container.state, "health", None)
    if health is None or not health.status:
        return None
    try:
        return HealthStatus(health.status)
    except ValueError:
        return None


class DockerRuntime:
    """RuntimeAdapter backed by the local (or configured) Docker daemon."""

    def __init__(self, host: Optional[str] = None, stop_timeout: int = 10):
        self.docker = DockerClient(host=host) if host else DockerClient()
        self.stop_timeout = stop_timeout

    async def _call(self, description: str, fn, *args, **kwargs):
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except DockerException as e:
            logger.error(f"Docker {description} failed: {e}")
            raise AdapterError(f"Docker {description} failed: {e}") from e

    def _summary(self, container) -> WorkloadSummary:
        return WorkloadSummary(
            id=container.id,
            name=container.name.lstrip("/"),
            image=container.config.image or "",
            state=_state_of(container),
            labels=dict(container.config.labels or {}),
        )

    async def list(self) -> list[WorkloadSummary]:
        containers = await self._call(
            "list", self.docker.container.list, all=True
        )
        return [self._summary(c) for c in containers]

    async def inspect(self, workload_id: str) -> WorkloadDetail:
        container = await self._call(
            f"inspect of {workload_id}", self.docker.container.inspect, workload_id
        )
        summary = self._summary(container)
        return WorkloadDetail(
            **summary.model_dump(),
            health=_health_of(container),
            started_at=container.state.started_at,
            created=container.created,
            networks=list((container.network_settings.networks or {}).keys()),
        )

    async def start(self, workload_id: str) -> None:
        await self._call(
            f"start of {workload_id}", self.docker.container.start, workload_id
        )

    async def stop(self, workload_id: str) -> None:
        await self._call(
            f"stop of {workload_id}",
            self.docker.container.stop,
            workload_id,
            time=self.stop_timeout,
        )

    async def restart(self, workload_id: str) -> None:
        await self._call(
            f"restart of {workload_id}", self.docker.container.restart, workload_id
        )

    def ping(self) -> bool:
        """Check whether the daemon answers."""
        try:
            self.docker.system.info()
            return True
        except DockerException:
            return False
