# backend/classbook/main.py
"""
FastAPI application for the Classbook booking backend.

Run locally with::

    uvicorn classbook.main:app --reload --app-dir backend
"""

from contextlib import asynccontextmanager
import logging
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .core.config import is_running_tests, settings
from .errors import register_error_handlers
from .routes import bookings, health, jobs, prometheus, stripe_webhooks

logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

API_TITLE = "Classbook API"
API_VERSION = "0.1.0"


@asynccontextmanager
async def app_lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Handle application startup/shutdown."""
    logger.info(f"{API_TITLE} starting up...")
    logger.info(f"Environment: {settings.environment}")
    if is_running_tests():
        logger.info("Running under pytest (test mode active)")
    if not settings.stripe_webhook_secret.get_secret_value():
        logger.warning("STRIPE_WEBHOOK_SECRET is not set; /webhooks-stripe will reject every call")
    if not settings.cron_secret.get_secret_value() and not settings.service_role_key.get_secret_value():
        logger.warning("No CRON_SECRET or SERVICE_ROLE_KEY set; scheduler endpoints are locked")
    yield
    logger.info(f"{API_TITLE} shutting down...")


def create_app() -> FastAPI:
    app = FastAPI(
        title=API_TITLE,
        version=API_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=app_lifespan,
    )
    register_error_handlers(app)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials="*" not in settings.cors_origins,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["Idempotency-Key", "Idempotent-Replayed", "Retry-After"],
    )
    logger.info("CORS allow_origins=%s", settings.cors_origins)

    app.include_router(bookings.router)
    app.include_router(jobs.router)
    app.include_router(stripe_webhooks.router)
    app.include_router(health.router)
    app.include_router(prometheus.router)
    return app


app = create_app()
