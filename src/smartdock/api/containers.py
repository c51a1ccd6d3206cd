"""Container and stack endpoints."""

import logging

from fastapi import APIRouter, Depends

from smartdock.core.runtime import WorkloadDetail
from smartdock.core.workloads import Stack, WorkloadAction, group_stacks
from smartdock.services import Services, get_services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["containers"])


@router.get("/containers")
async def list_containers(
    services: Services = Depends(get_services),
) -> list[WorkloadDetail]:
    """List all containers, running or not, with health and uptime."""
    return await services.workloads.describe_workloads()


@router.post("/containers/{container_id}/{action}")
async def container_action(
    container_id: str,
    action: WorkloadAction,
    services: Services = Depends(get_services),
) -> dict:
    """Start, stop or restart a container."""
    await services.workloads.perform(container_id, action)
    return {"status": "success", "id": container_id, "action": action.value}


@router.get("/stacks")
async def list_stacks(services: Services = Depends(get_services)) -> list[Stack]:
    """Containers grouped by compose project."""
    return group_stacks(await services.workloads.list_workloads())
