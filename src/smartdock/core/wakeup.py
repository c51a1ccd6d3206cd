"""Smart wake-up: start a dormant container on demand and wait until ready.

A session moves through

    idle -> resolving -> (already_running | starting) -> health_checking -> ready

and ends in ``failed`` on timeout, adapter error, repeated inspect failures
or cancellation. Every transition is published as a ``wakeup:progress``
event. A failed session never stops the container it started.
"""

import asyncio
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from smartdock.core.errors import (
    AdapterError,
    HealthCheckError,
    SmartDockError,
    TargetNotFoundError,
    WakeCancelledError,
    WakeError,
    WakeTimeoutError,
)
from smartdock.core.events import EventBus, EventType
from smartdock.core.runtime import WorkloadSummary
from smartdock.core.workloads import WorkloadAction, WorkloadController

logger = logging.getLogger(__name__)


class WakeState(str, Enum):
    IDLE = "idle"
    RESOLVING = "resolving"
    ALREADY_RUNNING = "already_running"
    STARTING = "starting"
    HEALTH_CHECKING = "health_checking"
    READY = "ready"
    FAILED = "failed"


class WakeOptions(BaseModel):
    timeout_ms: int = Field(30000, gt=0)
    poll_interval_ms: int = Field(1000, gt=0)
    max_retries: int = Field(3, ge=0)


class WakeSession(BaseModel):
    """State of one wake-up request. Never persisted."""

    id: str = Field(default_factory=lambda: uuid4().hex[:12])
    identifier: str
    workload_id: Optional[str] = None
    workload_name: Optional[str] = None
    requested_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    state: WakeState = WakeState.IDLE
    elapsed_ms: int = 0
    started: bool = False
    reason: Optional[str] = None


class WakeOutcome(BaseModel):
    """What the caller gets back from a successful wake-up."""

    session_id: str
    identifier: str
    workload_id: str
    workload_name: str
    state: WakeState
    elapsed_ms: int
    started: bool
    message: str


def resolve_target(identifier: str, workloads: list[WorkloadSummary]) -> WorkloadSummary:
    """Find the container addressed by a domain or container name.

    A ``smartdock.domain`` label equal to the identifier wins over a
    container whose name equals the identifier's first DNS label.
    """
    wanted = identifier.strip().lower().rstrip(".")
    first_label = wanted.split(".")[0]

    for workload in workloads:
        if workload.domain and workload.domain.strip().lower() == wanted:
            return workload
    for workload in workloads:
        if workload.name.lower() == first_label:
            return workload
    raise TargetNotFoundError(identifier)


class WakeOrchestrator:
    """Runs wake-up sessions against the container runtime."""

    def __init__(
        self,
        workloads: WorkloadController,
        bus: EventBus,
        default_options: Optional[WakeOptions] = None,
    ):
        self.workloads = workloads
        self.bus = bus
        self.default_options = default_options or WakeOptions()

    async def wake(
        self,
        identifier: str,
        options: Optional[WakeOptions] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> WakeOutcome:
        """Wake the container behind ``identifier`` and wait for readiness.

        Args:
            identifier: Domain (``app.example.com``) or container name
            options: Timeout, poll interval and retry budget
            cancel: Set by the caller to abandon the session

        Returns:
            WakeOutcome in the ready state

        Raises:
            TargetNotFoundError: nothing matches the identifier
            AdapterError: listing or starting the container failed
            WakeTimeoutError: not ready within ``timeout_ms``
            HealthCheckError: ``max_retries`` consecutive inspect failures
            WakeCancelledError: ``cancel`` was set
        """
        options = options or self.default_options
        session = WakeSession(identifier=identifier)
        loop = asyncio.get_running_loop()
        started_at = loop.time()

        def transition(state: WakeState, reason: Optional[str] = None) -> None:
            session.state = state
            session.reason = reason
            session.elapsed_ms = int((loop.time() - started_at) * 1000)
            self.bus.emit(EventType.WAKE_PROGRESS, session=session.model_dump(mode="json"))

        def fail(error: SmartDockError) -> SmartDockError:
            transition(WakeState.FAILED, error.message)
            logger.warning(f"Wake-up of {identifier} failed: {error.message}")
            if isinstance(error, WakeError):
                error.outcome = session.model_copy()
            return error

        transition(WakeState.RESOLVING)
        try:
            # One deadline covers the whole session, resolving included.
            async with asyncio.timeout(options.timeout_ms / 1000):
                workload = resolve_target(identifier, await self.workloads.list_workloads())
                session.workload_id = workload.id
                session.workload_name = workload.name

                if workload.running:
                    transition(WakeState.ALREADY_RUNNING)
                    transition(WakeState.READY)
                    return self._outcome(session, "Container is already running")

                logger.info(f"Waking {workload.name} for {identifier}")
                await self._start_and_wait(session, workload, options, cancel, transition)
        except TimeoutError:
            raise fail(
                WakeTimeoutError(
                    f"{session.workload_name or identifier} not ready within "
                    f"{options.timeout_ms} ms (last state: {session.state.value})"
                )
            )
        except SmartDockError as e:
            raise fail(e)
        except asyncio.CancelledError:
            fail(WakeCancelledError("Wake-up cancelled by caller"))
            raise

        transition(WakeState.READY)
        logger.info(f"{workload.name} ready after {session.elapsed_ms} ms")
        return self._outcome(session, "Container started successfully")

    async def _start_and_wait(
        self,
        session: WakeSession,
        workload: WorkloadSummary,
        options: WakeOptions,
        cancel: Optional[asyncio.Event],
        transition,
    ) -> None:
        runtime = self.workloads.runtime

        transition(WakeState.STARTING)
        async with self.workloads.lock(workload.id):
            # A concurrent request may have started it while we waited.
            detail = await runtime.inspect(workload.id)
            if not detail.running:
                await self.workloads.perform_locked(workload.id, WorkloadAction.START)
                session.started = True

        transition(WakeState.HEALTH_CHECKING)
        failures = 0
        while True:
            self._check_cancel(cancel)
            try:
                detail = await runtime.inspect(workload.id)
            except AdapterError as e:
                failures += 1
                logger.debug(f"Readiness check {failures} for {workload.name} failed: {e}")
                if failures >= max(options.max_retries, 1):
                    raise HealthCheckError(
                        f"{workload.name}: {failures} consecutive readiness checks failed "
                        f"({e.message})"
                    )
            else:
                failures = 0
                if detail.ready:
                    return
            await self._pause(options.poll_interval_ms / 1000, cancel)

    @staticmethod
    def _check_cancel(cancel: Optional[asyncio.Event]) -> None:
        if cancel is not None and cancel.is_set():
            raise WakeCancelledError("Wake-up cancelled by caller")

    @classmethod
    async def _pause(cls, seconds: float, cancel: Optional[asyncio.Event]) -> None:
        if cancel is None:
            await asyncio.sleep(seconds)
            return
        try:
            await asyncio.wait_for(cancel.wait(), timeout=seconds)
        except TimeoutError:
            return
        cls._check_cancel(cancel)

    @staticmethod
    def _outcome(session: WakeSession, message: str) -> WakeOutcome:
        return WakeOutcome(
            session_id=session.id,
            identifier=session.identifier,
            workload_id=session.workload_id,
            workload_name=session.workload_name,
            state=session.state,
            elapsed_ms=session.elapsed_ms,
            started=session.started,
            message=message,
        )
