"""Scheduled task endpoints."""

import logging

from fastapi import APIRouter, Depends

from smartdock.core.scheduler import (
    ScheduledTask,
    ScheduledTaskInput,
    ScheduledTaskPatch,
)
from smartdock.services import Services, get_services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/schedules", tags=["schedules"])


@router.get("")
async def list_schedules(
    services: Services = Depends(get_services),
) -> list[ScheduledTask]:
    return services.scheduler.list_tasks()


@router.post("")
async def create_schedule(
    data: ScheduledTaskInput,
    services: Services = Depends(get_services),
) -> ScheduledTask:
    """Register a schedule; invalid cron expressions are rejected with 422."""
    return await services.scheduler.register(data)


@router.get("/{task_id}")
async def get_schedule(
    task_id: str,
    services: Services = Depends(get_services),
) -> ScheduledTask:
    return services.scheduler.get(task_id)


@router.patch("/{task_id}")
async def update_schedule(
    task_id: str,
    patch: ScheduledTaskPatch,
    services: Services = Depends(get_services),
) -> ScheduledTask:
    return await services.scheduler.update(task_id, patch)


@router.delete("/{task_id}")
async def delete_schedule(
    task_id: str,
    services: Services = Depends(get_services),
) -> dict:
    """Delete a schedule. Deleting an unknown id succeeds with removed=false."""
    removed = await services.scheduler.remove(task_id)
    return {"status": "success", "id": task_id, "removed": removed}


@router.post("/{task_id}/run")
async def run_schedule(
    task_id: str,
    services: Services = Depends(get_services),
) -> ScheduledTask:
    """Run a schedule's action now."""
    return await services.scheduler.run_now(task_id)
