"""
Hestia Backend Application

FastAPI application hosting the scheduler API and the periodic tick service.
"""

import os
import sys
from contextlib import asynccontextmanager

import log_config  # noqa: F401
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger

# Add core to Python path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

# Import API router
import api
from api import router as api_router

from core.hestia.config import load_app_config
from core.hestia.device_client import DaikinClient
from core.hestia.price_source import EleringClient, PriceService
from core.hestia.scheduler import SchedulingOrchestrator
from core.hestia.store import Store
from core.hestia.tick_service import TickService
from core.hestia.weather import OpenMeteoClient, WeatherService


def build_orchestrator(config) -> SchedulingOrchestrator:
    """Wire the store and the external clients into an orchestrator."""
    store = Store(config.database_url)
    return SchedulingOrchestrator(
        store=store,
        price_service=PriceService(store, EleringClient(), tz=config.timezone),
        weather_service=WeatherService(store, OpenMeteoClient(), tz=config.timezone),
        device_client=DaikinClient(
            client_id=config.daikin_client_id,
            client_secret=config.daikin_client_secret,
        ),
        tz=config.timezone,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan manager for startup/shutdown."""
    # Startup
    logger.info("Hestia starting")

    config = load_app_config()
    orchestrator = build_orchestrator(config)
    api.app_config = config
    api.orchestrator = orchestrator
    logger.info(f"Database: {config.database_url}, timezone: {config.timezone}")

    tick_service = None
    if config.scheduler_enabled:
        tick_service = TickService(orchestrator, interval_minutes=config.tick_interval_minutes)
        await tick_service.start()
        api.tick_service = tick_service
    else:
        logger.warning("⚠️ Periodic scheduler disabled, relying on /api/cron")

    yield

    # Shutdown
    logger.info("Hestia shutting down")
    if tick_service:
        await tick_service.stop()


# Create FastAPI application
app = FastAPI(
    title="Hestia API",
    description="Price-proportional heat pump scheduling on day-ahead electricity prices",
    version="0.1.0",
    lifespan=lifespan,
)


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    """Handle all unhandled exceptions gracefully."""
    import traceback

    tb_str = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))

    logger.error(f"Unhandled exception: {exc}")
    logger.error(f"Request path: {request.url.path}")
    logger.error(f"Stack trace:\n{tb_str}")

    return JSONResponse(
        status_code=500,
        content={
            "detail": str(exc),
            "type": type(exc).__name__,
            "message": "Internal server error",
        },
    )


# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API router
app.include_router(api_router)


# For development
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8080)
