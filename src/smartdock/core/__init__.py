"""Core modules for SmartDock.

Contains the fundamental building blocks:
- runtime: Docker runtime adapter (python-on-whales)
- workloads: per-container action serialization and stack grouping
- events: bounded in-process event bus
- scheduler: cron-driven container actions
- proxy: proxy rules and Caddyfile compilation
- wakeup: on-demand container wake-up
"""

from smartdock.core.errors import (
    SmartDockError,
    ValidationError,
    InvalidScheduleError,
    DuplicateRuleError,
    NotFoundError,
    TargetNotFoundError,
    ProtectedRuleError,
    AdapterError,
    CompilationError,
    WakeError,
    WakeTimeoutError,
    HealthCheckError,
    WakeCancelledError,
)
from smartdock.core.events import (
    EventBus,
    EventType,
    DomainEvent,
    Subscription,
)
from smartdock.core.runtime import (
    RuntimeAdapter,
    DockerRuntime,
    WorkloadSummary,
    WorkloadDetail,
    WorkloadState,
    HealthStatus,
)
from smartdock.core.workloads import (
    WorkloadController,
    WorkloadAction,
    Stack,
    group_stacks,
)
from smartdock.core.scheduler import (
    ScheduleEngine,
    ScheduledTask,
    ScheduledTaskInput,
    ScheduledTaskPatch,
    Clock,
)
from smartdock.core.proxy import (
    ProxyRuleCompiler,
    ProxyRule,
    ProxyRuleInput,
    ConfigArtifact,
    FileArtifactSink,
    MemoryArtifactSink,
)
from smartdock.core.wakeup import (
    WakeOrchestrator,
    WakeOptions,
    WakeOutcome,
    WakeState,
)

__all__ = [
    # Errors
    "SmartDockError",
    "ValidationError",
    "InvalidScheduleError",
    "DuplicateRuleError",
    "NotFoundError",
    "TargetNotFoundError",
    "ProtectedRuleError",
    "AdapterError",
    "CompilationError",
    "WakeError",
    "WakeTimeoutError",
    "HealthCheckError",
    "WakeCancelledError",
    # Events
    "EventBus",
    "EventType",
    "DomainEvent",
    "Subscription",
    # Runtime
    "RuntimeAdapter",
    "DockerRuntime",
    "WorkloadSummary",
    "WorkloadDetail",
    "WorkloadState",
    "HealthStatus",
    "WorkloadController",
    "WorkloadAction",
    "Stack",
    "group_stacks",
    # Scheduling
    "ScheduleEngine",
    "ScheduledTask",
    "ScheduledTaskInput",
    "ScheduledTaskPatch",
    "Clock",
    # Proxy
    "ProxyRuleCompiler",
    "ProxyRule",
    "ProxyRuleInput",
    "ConfigArtifact",
    "FileArtifactSink",
    "MemoryArtifactSink",
    # Wake-up
    "WakeOrchestrator",
    "WakeOptions",
    "WakeOutcome",
    "WakeState",
]
