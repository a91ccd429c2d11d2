"""
FastAPI application for the deliverable review service.
"""

from __future__ import annotations

import importlib.metadata
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import get_settings
from .db.base import init_database
from .logging_config import configure_logging
from .review.engine import get_runtime
from .review.notifications import WebhookNotifier
from .review.routes import router as review_router

logger = structlog.get_logger()

notifier: Optional[WebhookNotifier] = None


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    global notifier
    settings = get_settings()
    configure_logging(settings)
    logger.info("Starting Deliverable Review", environment=settings.environment)

    try:
        await init_database()

        if settings.notification_webhook_url:
            notifier = WebhookNotifier(
                settings.notification_webhook_url,
                timeout=settings.notification_timeout_seconds,
                queue_size=settings.notification_queue_size,
            )
            notifier.start()
            get_runtime().publisher.subscribe(notifier)
    except Exception as e:
        logger.error("startup_failed", error=str(e))
        raise

    yield

    logger.info("Shutting down Deliverable Review")
    if notifier:
        get_runtime().publisher.unsubscribe(notifier)
        notifier.stop()
        notifier = None
    logger.info("Shutdown complete")


app = FastAPI(
    title="Deliverable Review",
    description="Revision and approval workflows for project deliverables",
    version=importlib.metadata.version("deliverable-review"),
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(review_router)


@app.get("/healthz")
def healthz() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "ok"}


@app.get("/version")
def version() -> dict[str, str]:
    """Return the version of the application."""
    return {"version": importlib.metadata.version("deliverable-review")}
