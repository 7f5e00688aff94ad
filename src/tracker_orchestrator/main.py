"""
Main application entry point for the Tracker Request Orchestrator.

This module sets up the FastAPI application that hosts the request
coordinator and the global rate limiter service, and configures logging.
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import structlog
from fastapi import APIRouter, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError

from . import __version__
from .config import Settings, get_settings
from .coordinator.coordinator import Coordinator
from .coordinator.models import (
    CoordinatorRequest,
    CoordinatorResponse,
    EmergencyStopCommand,
    RateLimiterCommand,
)
from .coordinator.rate_limiter import (
    GlobalRateLimiter,
    RateLimiterBackend,
    RemoteRateLimiterClient,
)
from .exceptions import StoreError
from .state.manager import ControlStoreFactory
from .vendor.client import VendorClient


def setup_logging(settings: Settings | None = None) -> None:
    """Configure structured logging."""
    settings = settings or get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level), format="%(message)s"
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            (
                structlog.processors.JSONRenderer()
                if settings.log_format == "json"
                else structlog.dev.ConsoleRenderer()
            ),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def build_coordinator(
    settings: Settings, rate_limiter: RateLimiterBackend | None
) -> tuple[Coordinator, VendorClient]:
    """Create the coordinator and the vendor client it calls through."""
    config = settings.coordinator_config
    vendor_client = VendorClient(settings.vendor_config)
    store = ControlStoreFactory.create_control_store(
        config.control_store, redis_url=config.redis_url
    )
    coordinator = Coordinator(
        vendor_client.call, store=store, rate_limiter=rate_limiter, config=config
    )
    return coordinator, vendor_client


router = APIRouter()


def _respond(response: CoordinatorResponse) -> JSONResponse:
    return JSONResponse(content=response.to_wire(), status_code=response.http_status)


@router.post("/coordinator")
async def coordinate(request: Request) -> JSONResponse:
    """Run one vendor action through the coordinator."""
    try:
        body = await request.json()
        coordinator_request = CoordinatorRequest.model_validate(body)
    except (ValueError, PydanticValidationError) as e:
        return _respond(
            CoordinatorResponse(
                success=False, error=f"Invalid coordinator request: {e}", http_status=400
            )
        )

    coordinator: Coordinator = request.app.state.coordinator
    return _respond(await coordinator.handle(coordinator_request))


@router.get("/coordinator/status")
async def coordinator_status(request: Request) -> dict[str, Any]:
    """Coordinator status snapshot. Always answers."""
    return await request.app.state.coordinator.get_status()


@router.post("/coordinator/emergency-stop")
async def set_emergency_stop(
    command: EmergencyStopCommand, request: Request
) -> dict[str, Any]:
    """Halt all vendor traffic, optionally for a fixed duration."""
    coordinator: Coordinator = request.app.state.coordinator
    try:
        control = await coordinator.set_emergency_stop(command.reason, command.duration)
    except StoreError as e:
        raise HTTPException(status_code=503, detail=str(e)) from e
    return {"status": "stopped", "control": control.to_dict()}


@router.delete("/coordinator/emergency-stop")
async def clear_emergency_stop(request: Request) -> dict[str, str]:
    """Lift the emergency stop."""
    coordinator: Coordinator = request.app.state.coordinator
    try:
        await coordinator.clear_emergency_stop()
    except StoreError as e:
        raise HTTPException(status_code=503, detail=str(e)) from e
    return {"status": "cleared"}


@router.post("/rate-limiter")
async def rate_limiter_service(
    command: RateLimiterCommand, request: Request
) -> dict[str, Any]:
    """Global rate limiter service used by remote coordinators."""
    limiter: GlobalRateLimiter = request.app.state.rate_limiter
    return await limiter.handle_command(command)


@router.get("/health")
async def health_check(request: Request) -> dict[str, Any]:
    """Health check endpoint."""
    coordinator: Coordinator = request.app.state.coordinator
    try:
        store_healthy = await coordinator.store.health_check()
    except Exception:
        store_healthy = False
    return {
        "status": "healthy" if store_healthy else "degraded",
        "store": coordinator.store.backend_name,
        "store_healthy": store_healthy,
    }


def create_app(
    settings: Settings | None = None, coordinator: Coordinator | None = None
) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        settings: Application settings (defaults to the process settings)
        coordinator: Prebuilt coordinator; built from settings when omitted
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan manager."""
        setup_logging(settings)
        logger = structlog.get_logger()

        logger.info("Starting Tracker Request Orchestrator")
        logger.info(
            "Configuration loaded",
            control_store=settings.control_store,
            remote_rate_limiter=bool(settings.rate_limiter_url),
            minimum_request_spacing=settings.minimum_request_spacing,
            debug=settings.debug,
        )

        local_limiter = GlobalRateLimiter()
        remote_limiter: RemoteRateLimiterClient | None = None
        vendor_client: VendorClient | None = None

        active = coordinator
        if active is None:
            if settings.rate_limiter_url:
                remote_limiter = RemoteRateLimiterClient(settings.rate_limiter_url)
            active, vendor_client = build_coordinator(
                settings, remote_limiter or local_limiter
            )

        app.state.settings = settings
        app.state.coordinator = active
        app.state.rate_limiter = local_limiter

        yield

        logger.info("Shutting down Tracker Request Orchestrator")
        await active.close()
        if vendor_client is not None:
            await vendor_client.close()
        if remote_limiter is not None:
            await remote_limiter.close()

    app = FastAPI(
        title="Tracker Request Orchestrator",
        description="Rate-limit-safe request coordination for a vehicle tracking API",
        version=__version__,
        lifespan=lifespan,
    )
    app.include_router(router)

    @app.get("/")
    async def root() -> dict[str, str]:
        """Root endpoint."""
        return {
            "message": "Tracker Request Orchestrator",
            "version": __version__,
            "status": "active",
        }

    return app


app = create_app()


def main() -> None:
    """Main entry point."""
    import uvicorn

    settings = get_settings()
    setup_logging(settings)
    logger = structlog.get_logger()

    logger.info(
        "Starting server", host=settings.host, port=settings.port, debug=settings.debug
    )

    uvicorn.run(
        "tracker_orchestrator.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_config=None,
    )


if __name__ == "__main__":
    main()
