"""
FastAPI application serving the billing router.

Run with:
  uvicorn voice_billing.api.app:app --reload
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from ..config import settings
from ..db.mongo import MongoDBManager
from ..logging.setup import configure_logging
from .router import get_services, router


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    services = get_services()
    if isinstance(services.db, MongoDBManager):
        await services.db.ensure_indexes()
    logger.info("Billing API started", extra={"paypal_base_url": settings.paypal_base_url})
    yield
    await services.paypal.aclose()


def create_app() -> FastAPI:
    configure_logging(settings.LOG_LEVEL)
    app = FastAPI(title="Voice Billing API", lifespan=lifespan)
    app.include_router(router)

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    return app


app = create_app()
