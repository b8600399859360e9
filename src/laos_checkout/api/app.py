"""FastAPI application factory for the checkout service."""
from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI

from .. import __version__
from ..config import CheckoutSettings, load_settings
from ..logging_config import setup_logging
from ..service import CheckoutService
from . import routes
from .auth import IdentityProvider, StaticTokenIdentityProvider
from .middleware import RequestContextMiddleware, register_exception_handlers

logger = logging.getLogger("laos_checkout.api")


async def _cleanup_loop(service: CheckoutService, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            stats = await service.cleanup()
            logger.debug("Maintenance pass: %s", stats)
        except Exception:
            logger.error("Maintenance pass failed", exc_info=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    service: CheckoutService = app.state.service
    settings = service.settings
    logger.info("Starting checkout API...")

    init_schema = getattr(service.store, "init_schema", None)
    if init_schema is not None and not settings.is_production:
        await init_schema()

    cleanup_task = None
    if settings.cleanup_interval_seconds > 0:
        cleanup_task = asyncio.create_task(
            _cleanup_loop(service, settings.cleanup_interval_seconds)
        )

    yield

    logger.info("Shutting down checkout API...")
    if cleanup_task is not None:
        cleanup_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await cleanup_task
    await service.close()


def create_app(
    settings: Optional[CheckoutSettings] = None,
    service: Optional[CheckoutService] = None,
    identity: Optional[IdentityProvider] = None,
) -> FastAPI:
    if settings is None:
        settings = service.settings if service is not None else load_settings()
    if service is None:
        service = CheckoutService.from_settings(settings)
    if identity is None:
        identity = StaticTokenIdentityProvider()

    app = FastAPI(
        title="Laos Checkout API",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.service = service

    register_exception_handlers(app)
    # Outermost: runs first so errors above are tagged with the request id
    app.add_middleware(RequestContextMiddleware, exclude_paths=["/health"])

    app.include_router(routes.router)
    app.dependency_overrides[routes.get_deps] = lambda: routes.CheckoutDependencies(
        service=service,
        identity=identity,
    )
    return app


def run() -> None:
    """Console entry point: serve the API with uvicorn."""
    settings = load_settings()
    setup_logging(level=settings.log_level, json_format=settings.log_json)
    uvicorn.run(
        create_app(settings),
        host=settings.host,
        port=settings.port,
        log_config=None,
    )
