# backend/app/main.py
"""
HealNest booking API.

Mounts the versioned routers under ``/api/v1`` plus the health and
Prometheus endpoints at the root.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
import logging
from typing import AsyncGenerator

from fastapi import APIRouter, FastAPI
from fastapi.routing import APIRoute

from .core.config import is_running_tests, settings
from .core.constants import API_DESCRIPTION, API_TITLE, API_VERSION, BRAND_NAME
from .errors import register_error_handlers
from .routes.v1 import (
    availability as availability_v1,
    booking as booking_v1,
    health as health_v1,
    prometheus as prometheus_v1,
    sessions as sessions_v1,
)

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def app_lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Handle application startup/shutdown without deprecated events."""
    logger.info(f"{BRAND_NAME} booking API starting up...")
    logger.info(
        "Environment: %s, payment provider: %s, meeting provider: %s",
        settings.environment,
        settings.payment_provider,
        settings.meeting_provider,
    )
    if settings.environment == "local" and not is_running_tests():
        from .database import init_db

        init_db()

    yield

    logger.info(f"{BRAND_NAME} booking API shutting down...")


def _unique_operation_id(route: APIRoute) -> str:
    methods = "_".join(sorted(m.lower() for m in route.methods or []))
    path = route.path_format.replace("/", "_").replace("{", "").replace("}", "").strip("_")
    name = (route.name or "operation").lower().replace(" ", "_")
    return f"{methods}__{path}__{name}".strip("_")


app = FastAPI(
    title=API_TITLE,
    description=API_DESCRIPTION,
    version=API_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=app_lifespan,
    generate_unique_id_function=_unique_operation_id,
)
register_error_handlers(app)

api_v1 = APIRouter(prefix="/api/v1")
api_v1.include_router(availability_v1.router, prefix="/availability")
api_v1.include_router(booking_v1.router, prefix="/booking")
api_v1.include_router(sessions_v1.router, prefix="/session")

# Mount API v1 first
app.include_router(api_v1)
app.include_router(health_v1.router)
app.include_router(prometheus_v1.router)
