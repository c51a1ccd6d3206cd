"""WebSocket stream of domain events."""

import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from smartdock.core.events import EventType, Subscription

logger = logging.getLogger(__name__)

router = APIRouter(tags=["events"])


def parse_types(types: Optional[str]) -> Optional[list[EventType]]:
    """Parse a comma separated ``types`` query value."""
    if not types:
        return None
    return [EventType(t.strip()) for t in types.split(",") if t.strip()]


async def _watch_client(websocket: WebSocket, subscription: Subscription) -> None:
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        subscription.close()


@router.websocket("/ws/events")
async def event_stream(websocket: WebSocket, types: Optional[str] = None):
    """Push every published event as JSON until the client disconnects."""
    try:
        wanted = parse_types(types)
    except ValueError:
        await websocket.close(code=1008)
        return

    services = websocket.app.state.services
    await websocket.accept()
    subscription = services.bus.subscribe(wanted)
    logger.info(f"Event subscriber connected ({services.bus.subscriber_count} total)")

    watcher = asyncio.create_task(_watch_client(websocket, subscription))
    try:
        async for event in subscription:
            await websocket.send_json(event.model_dump(mode="json"))
    except WebSocketDisconnect:
        pass
    finally:
        subscription.close()
        watcher.cancel()
        if subscription.dropped and websocket.client_state == WebSocketState.CONNECTED:
            try:
                await websocket.close(code=1013)
            except WebSocketDisconnect:
                pass
        logger.info("Event subscriber disconnected")
