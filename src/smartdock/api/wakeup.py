"""Smart wake-up endpoint.

Reverse proxies call this when a request arrives for a stopped container.
The call returns once the container is ready or the session failed. If the
client goes away the session is cancelled; the container keeps starting.
"""

import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from smartdock.core.wakeup import WakeOutcome
from smartdock.services import Services, get_services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/wakeup", tags=["wakeup"])

DISCONNECT_POLL_SECONDS = 0.5


async def _watch_disconnect(request: Request, cancel: asyncio.Event) -> None:
    while not cancel.is_set():
        if await request.is_disconnected():
            logger.info(f"Client left during wake-up of {request.path_params.get('identifier')}")
            cancel.set()
            return
        await asyncio.sleep(DISCONNECT_POLL_SECONDS)


@router.post("/{identifier}")
async def wake_up(
    identifier: str,
    request: Request,
    timeout_ms: Optional[int] = Query(None, gt=0),
    poll_interval_ms: Optional[int] = Query(None, gt=0),
    max_retries: Optional[int] = Query(None, ge=0),
    services: Services = Depends(get_services),
) -> WakeOutcome:
    """Wake the container serving ``identifier`` (domain or name)."""
    overrides = {
        "timeout_ms": timeout_ms,
        "poll_interval_ms": poll_interval_ms,
        "max_retries": max_retries,
    }
    options = services.wakeup.default_options.model_copy(
        update={k: v for k, v in overrides.items() if v is not None}
    )

    cancel = asyncio.Event()
    watcher = asyncio.create_task(_watch_disconnect(request, cancel))
    try:
        return await services.wakeup.wake(identifier, options, cancel=cancel)
    finally:
        watcher.cancel()
