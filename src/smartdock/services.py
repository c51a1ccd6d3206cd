"""Wiring of the core components.

``Services`` holds one instance of every component. The FastAPI app keeps it
on ``app.state`` and routes receive it through ``get_services``.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Request

from smartdock.config import Settings, settings as default_settings
from smartdock.core.events import EventBus
from smartdock.core.proxy import (
    FileArtifactSink,
    MemoryArtifactSink,
    ProxyRule,
    ProxyRuleCompiler,
)
from smartdock.core.runtime import DockerRuntime, RuntimeAdapter
from smartdock.core.scheduler import Clock, ScheduledTask, ScheduleEngine
from smartdock.core.store import YamlStore
from smartdock.core.wakeup import WakeOptions, WakeOrchestrator
from smartdock.core.workloads import WorkloadController

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    bus: EventBus
    runtime: RuntimeAdapter
    workloads: WorkloadController
    scheduler: ScheduleEngine
    proxy: ProxyRuleCompiler
    wakeup: WakeOrchestrator

    async def start(self) -> None:
        await self.proxy.start()
        await self.scheduler.start()

    async def stop(self) -> None:
        await self.scheduler.stop()
        self.bus.close()


def build_services(
    settings: Optional[Settings] = None,
    runtime: Optional[RuntimeAdapter] = None,
    clock: Optional[Clock] = None,
    persist: bool = True,
) -> Services:
    """Create every component from settings.

    Args:
        settings: Application settings (module defaults when omitted)
        runtime: Container runtime; a DockerRuntime when omitted
        clock: Clock for the schedule engine
        persist: Keep schedules and rules in YAML files under state_path
    """
    settings = settings or default_settings
    bus = EventBus(default_maxsize=settings.event_queue_size)
    runtime = runtime or DockerRuntime(host=settings.docker_host)
    workloads = WorkloadController(runtime, bus)

    schedule_store = rule_store = None
    if persist:
        schedule_store = YamlStore(settings.state_path / "schedules.yaml", ScheduledTask)
        rule_store = YamlStore(settings.state_path / "proxy_rules.yaml", ProxyRule)

    if settings.proxy_enabled:
        sink = FileArtifactSink(settings.proxy_config_path)
    else:
        logger.info("Proxy disabled, compiled configuration kept in memory")
        sink = MemoryArtifactSink()

    return Services(
        settings=settings,
        bus=bus,
        runtime=runtime,
        workloads=workloads,
        scheduler=ScheduleEngine(workloads, bus, store=schedule_store, clock=clock),
        proxy=ProxyRuleCompiler(
            bus,
            sink=sink,
            store=rule_store,
            tls_email=settings.acme_email,
            health_uri=settings.proxy_health_uri,
            main_domain=settings.main_domain,
        ),
        wakeup=WakeOrchestrator(
            workloads,
            bus,
            default_options=WakeOptions(
                timeout_ms=settings.wake_timeout_ms,
                poll_interval_ms=settings.wake_poll_interval_ms,
                max_retries=settings.wake_max_retries,
            ),
        ),
    )


def get_services(request: Request) -> Services:
    """FastAPI dependency returning the app's services."""
    return request.app.state.services
