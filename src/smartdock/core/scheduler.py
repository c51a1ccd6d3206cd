"""Schedule engine for recurring container actions.

Each enabled task owns a timer coroutine that sleeps until the task's next
cron match, fires the action in a separate asyncio task, computes the
following match and goes back to sleep. Disabling or removing a task cancels
its timer, so no firing is ever left pending for a task that no longer wants
one. Missed firings (clock jumps, disabled periods) are skipped, never
backfilled.
"""

import asyncio
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import uuid4

from croniter import CroniterBadDateError, croniter
from pydantic import BaseModel, Field, field_validator

from smartdock.core.errors import (
    AdapterError,
    InvalidScheduleError,
    NotFoundError,
    SmartDockError,
)
from smartdock.core.events import EventBus, EventType
from smartdock.core.store import YamlStore
from smartdock.core.workloads import WorkloadAction, WorkloadController

logger = logging.getLogger(__name__)


# =============================================================================
# Models
# =============================================================================


class TargetType(str, Enum):
    WORKLOAD = "workload"
    GROUP = "group"


class TaskAction(str, Enum):
    START = "start"
    STOP = "stop"
    RESTART = "restart"
    UPDATE = "update"


class TaskStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class TaskOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


def _normalize_target_type(value):
    # The dashboard historically sent "container" and "stack".
    aliases = {"container": "workload", "stack": "group"}
    if isinstance(value, str):
        return aliases.get(value, value)
    return value


class ScheduledTaskInput(BaseModel):
    """Fields accepted when registering a task."""

    name: str
    description: str = ""
    target: str
    target_type: TargetType = TargetType.WORKLOAD
    action: TaskAction
    schedule: str = Field(..., description="Five-field cron expression")
    enabled: bool = True

    @field_validator("target_type", mode="before")
    @classmethod
    def normalize_target_type(cls, value):
        return _normalize_target_type(value)


class ScheduledTaskPatch(BaseModel):
    """Partial update; only fields that are set are applied."""

    name: Optional[str] = None
    description: Optional[str] = None
    target: Optional[str] = None
    target_type: Optional[TargetType] = None
    action: Optional[TaskAction] = None
    schedule: Optional[str] = None
    enabled: Optional[bool] = None

    @field_validator("target_type", mode="before")
    @classmethod
    def normalize_target_type(cls, value):
        return _normalize_target_type(value)


class ScheduledTask(ScheduledTaskInput):
    """A registered task with its runtime bookkeeping."""

    id: str
    last_run: Optional[datetime] = None
    next_run: Optional[datetime] = None
    status: TaskStatus = TaskStatus.ACTIVE
    last_outcome: Optional[TaskOutcome] = None
    last_error: Optional[str] = None


# =============================================================================
# Time
# =============================================================================


class Clock:
    """Wall clock used by the engine; tests substitute a manual one."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


def validate_cron(expression: str) -> None:
    """Raise InvalidScheduleError unless expression is a 5-field cron with a next match."""
    if not isinstance(expression, str) or len(expression.split()) != 5:
        raise InvalidScheduleError(str(expression), "expected 5 fields")
    if not croniter.is_valid(expression):
        raise InvalidScheduleError(expression)
    next_fire_time(expression, datetime.now(timezone.utc))


def next_fire_time(expression: str, after: datetime) -> datetime:
    """Earliest minute strictly after ``after`` matching the expression."""
    if after.tzinfo is None:
        after = after.replace(tzinfo=timezone.utc)
    try:
        itr = croniter(expression, after)
        candidate = itr.get_next(datetime)
        while candidate <= after:
            candidate = itr.get_next(datetime)
    except CroniterBadDateError as e:
        raise InvalidScheduleError(expression, "never matches") from e
    return candidate


# =============================================================================
# Engine
# =============================================================================


class ScheduleEngine:
    """Owns scheduled tasks and fires them at their cron times."""

    def __init__(
        self,
        workloads: WorkloadController,
        bus: EventBus,
        store: Optional[YamlStore[ScheduledTask]] = None,
        clock: Optional[Clock] = None,
    ):
        self.workloads = workloads
        self.bus = bus
        self.store = store
        self.clock = clock or Clock()

        self._tasks: dict[str, ScheduledTask] = {}
        self._timers: dict[str, asyncio.Task] = {}
        self._firings: set[asyncio.Task] = set()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Load persisted tasks and arm the enabled ones."""
        if self.store is None:
            return
        now = self.clock.now()
        for task in self.store.load():
            try:
                validate_cron(task.schedule)
                task.next_run = next_fire_time(task.schedule, now) if task.enabled else None
            except InvalidScheduleError as e:
                logger.error(f"Skipping stored schedule {task.id}: {e}")
                continue
            task.status = TaskStatus.ACTIVE if task.enabled else TaskStatus.INACTIVE
            self._tasks[task.id] = task
            if task.enabled:
                self._arm(task.id)
        logger.info(f"Loaded {len(self._tasks)} schedules")

    async def stop(self) -> None:
        """Cancel every timer and in-flight firing."""
        pending = list(self._timers.values()) + list(self._firings)
        for t in pending:
            t.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self._timers.clear()
        self._firings.clear()

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    def get(self, task_id: str) -> ScheduledTask:
        task = self._tasks.get(task_id)
        if task is None:
            raise NotFoundError(f"Schedule {task_id} not found")
        return task

    def list_tasks(self) -> list[ScheduledTask]:
        return sorted(self._tasks.values(), key=lambda t: (t.name, t.id))

    def is_armed(self, task_id: str) -> bool:
        timer = self._timers.get(task_id)
        return timer is not None and not timer.done()

    async def register(self, data: ScheduledTaskInput) -> ScheduledTask:
        """Validate and add a task, arming it when enabled."""
        validate_cron(data.schedule)

        task = ScheduledTask(
            id=uuid4().hex[:12],
            **data.model_dump(),
            status=TaskStatus.ACTIVE if data.enabled else TaskStatus.INACTIVE,
        )
        if task.enabled:
            task.next_run = next_fire_time(task.schedule, self.clock.now())

        tasks = {**self._tasks, task.id: task}
        self._save(tasks)
        self._tasks = tasks
        if task.enabled:
            self._arm(task.id)

        logger.info(
            f"Registered schedule {task.id} ({task.action.value} {task.target} "
            f"at '{task.schedule}'), next run {task.next_run}"
        )
        return task

    async def update(self, task_id: str, patch: ScheduledTaskPatch) -> ScheduledTask:
        """Apply a partial update; re-arms when timing changed."""
        task = self.get(task_id)
        changes = patch.model_dump(exclude_unset=True, exclude_none=True)
        if "schedule" in changes:
            validate_cron(changes["schedule"])

        updated = task.model_copy(update=changes)
        updated.status = TaskStatus.ACTIVE if updated.enabled else TaskStatus.INACTIVE

        timing_changed = "schedule" in changes or "enabled" in changes
        if timing_changed:
            updated.next_run = (
                next_fire_time(updated.schedule, self.clock.now())
                if updated.enabled
                else None
            )

        tasks = {**self._tasks, task_id: updated}
        self._save(tasks)
        self._tasks = tasks
        if timing_changed:
            self._disarm(task_id)
        if timing_changed and updated.enabled:
            self._arm(task_id)

        logger.info(f"Updated schedule {task_id}: {sorted(changes)}")
        return updated

    async def remove(self, task_id: str) -> bool:
        """Disarm and discard a task. Unknown ids are a no-op."""
        if task_id not in self._tasks:
            self._disarm(task_id)
            return False
        tasks = {k: v for k, v in self._tasks.items() if k != task_id}
        self._save(tasks)
        self._tasks = tasks
        self._disarm(task_id)
        logger.info(f"Removed schedule {task_id}")
        return True

    async def run_now(self, task_id: str) -> ScheduledTask:
        """Execute a task immediately through the normal firing path.

        Raises the runtime error after recording it, so the caller sees
        failures the same way the event subscribers do.
        """
        self.get(task_id)
        task, error = await self._execute(task_id)
        if error is not None:
            raise error
        return task

    # -------------------------------------------------------------------------
    # Timers
    # -------------------------------------------------------------------------

    def _arm(self, task_id: str) -> None:
        self._disarm(task_id)
        self._timers[task_id] = asyncio.create_task(
            self._timer(task_id), name=f"schedule-timer-{task_id}"
        )

    def _disarm(self, task_id: str) -> None:
        timer = self._timers.pop(task_id, None)
        if timer is not None and timer is not asyncio.current_task():
            timer.cancel()

    async def _timer(self, task_id: str) -> None:
        while True:
            task = self._tasks.get(task_id)
            if task is None or not task.enabled or task.next_run is None:
                return

            delay = (task.next_run - self.clock.now()).total_seconds()
            if delay > 0:
                await self.clock.sleep(delay)
                continue

            due = task.next_run
            task.next_run = next_fire_time(task.schedule, max(self.clock.now(), due))
            logger.debug(f"Schedule {task_id} due at {due}, next at {task.next_run}")

            firing = asyncio.create_task(
                self._fire(task_id), name=f"schedule-fire-{task_id}"
            )
            self._firings.add(firing)
            firing.add_done_callback(self._firings.discard)

    async def _fire(self, task_id: str) -> None:
        try:
            _, error = await self._execute(task_id)
            if error is not None:
                logger.warning(f"Schedule {task_id} failed: {error}")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error executing schedule {task_id}: {e}", exc_info=True)

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    async def _execute(
        self, task_id: str
    ) -> tuple[ScheduledTask, Optional[SmartDockError]]:
        task = self.get(task_id)
        error: Optional[SmartDockError] = None
        try:
            await self._dispatch(task)
        except SmartDockError as e:
            error = e

        now = self.clock.now()
        # The task may have been updated or removed while the action ran.
        current = self._tasks.get(task_id, task)
        current.last_run = now
        current.last_outcome = TaskOutcome.FAILURE if error else TaskOutcome.SUCCESS
        current.last_error = error.message if error else None
        if current.enabled:
            current.next_run = next_fire_time(current.schedule, now)
        if task_id in self._tasks:
            self._save()

        self.bus.emit(
            EventType.TASK_EXECUTED,
            task=current.model_dump(mode="json"),
            outcome=current.last_outcome.value,
            error=current.last_error,
        )
        return current, error

    async def _dispatch(self, task: ScheduledTask) -> None:
        if task.action == TaskAction.UPDATE:
            # Image updates are handled outside the runtime adapter.
            logger.info(f"Schedule {task.id}: update action has no runtime effect")
            return

        action = WorkloadAction(task.action.value)
        if task.target_type == TargetType.WORKLOAD:
            await self.workloads.perform(task.target, action)
            return

        members = await self.workloads.members_of(task.target)
        if not members:
            raise NotFoundError(f"No containers in group {task.target}")

        failures = []
        for member in sorted(members, key=lambda w: w.name):
            try:
                await self.workloads.perform(member.id, action)
            except AdapterError as e:
                failures.append(f"{member.name}: {e.message}")
        if failures:
            raise AdapterError("; ".join(failures))

    def _save(self, tasks: Optional[dict[str, ScheduledTask]] = None) -> None:
        """Persist a task set; callers swap it in only after this returns."""
        if self.store is not None:
            tasks = self._tasks if tasks is None else tasks
            self.store.save(list(tasks.values()))
