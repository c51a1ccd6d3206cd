"""API routes for SmartDock.

Includes:
- containers: container listing, actions and compose stacks
- schedules: scheduled task CRUD
- proxy: proxy rule CRUD and compiled configuration
- wakeup: smart wake-up
- events: WebSocket event stream
"""

from smartdock.api.containers import router as containers_router
from smartdock.api.schedules import router as schedules_router
from smartdock.api.proxy import router as proxy_router
from smartdock.api.wakeup import router as wakeup_router
from smartdock.api.events import router as events_router

__all__ = [
    "containers_router",
    "schedules_router",
    "proxy_router",
    "wakeup_router",
    "events_router",
]
