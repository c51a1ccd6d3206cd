"""SmartDock - FastAPI application entry point."""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from smartdock import __version__
from smartdock.api import (
    containers_router,
    events_router,
    proxy_router,
    schedules_router,
    wakeup_router,
)
from smartdock.config import settings
from smartdock.core.errors import SmartDockError
from smartdock.services import Services, build_services

logger = logging.getLogger(__name__)


def create_app(services: Optional[Services] = None) -> FastAPI:
    """Build the application.

    Args:
        services: Pre-built components; built from settings at startup when
            omitted
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan handler for startup/shutdown."""
        logger.info(f"Starting {settings.app_name}...")

        app.state.services = services or build_services(settings)
        await app.state.services.start()

        # Bring label-driven proxy rules up to date
        try:
            workloads = await app.state.services.workloads.list_workloads()
            await app.state.services.proxy.reconcile(workloads)
        except SmartDockError as e:
            logger.warning(f"Could not reconcile proxy rules: {e}")
            logger.warning("Running without Docker support (development mode)")

        yield

        logger.info(f"Shutting down {settings.app_name}...")
        await app.state.services.stop()

    app = FastAPI(
        title=settings.app_name,
        description="Container schedules, reverse-proxy rules and smart wake-up",
        version=__version__,
        lifespan=lifespan,
    )

    @app.exception_handler(SmartDockError)
    async def smartdock_error_handler(request: Request, exc: SmartDockError):
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "error": exc.message, "kind": type(exc).__name__},
        )

    app.include_router(containers_router)
    app.include_router(schedules_router)
    app.include_router(proxy_router)
    app.include_router(wakeup_router)
    app.include_router(events_router)

    @app.get("/api/health")
    async def health_check(request: Request):
        """Health check endpoint."""
        services: Services = request.app.state.services
        ping = getattr(services.runtime, "ping", None)
        return {
            "status": "healthy",
            "version": __version__,
            "docker_available": await asyncio.to_thread(ping) if ping else False,
            "schedules": len(services.scheduler.list_tasks()),
            "proxy_rules": len(services.proxy.list_rules()),
            "event_subscribers": services.bus.subscriber_count,
        }

    return app


app = create_app()


# =============================================================================
# Development server
# =============================================================================

if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    uvicorn.run(
        "smartdock.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
