from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError

from pushrelay.apps.api.errors import (
    http_exception_handler,
    pushrelay_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from pushrelay.apps.api.routes.health import router as health_router
from pushrelay.apps.api.routes.messages import router as messages_router
from pushrelay.apps.api.routes.push import router as push_router
from pushrelay.core.config import get_settings
from pushrelay.core.errors import PushRelayError
from pushrelay.core.logging import configure_logging
from pushrelay.persistence.db import get_session
from pushrelay.services.dispatch.orchestrator import requeue_pending_async
from pushrelay.services.dispatch.queue import get_dispatch_queue


API_VERSION = "v1"
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    queue = get_dispatch_queue()
    queue.start()
    if get_settings().requeue_async_on_startup:
        # Rows left async_pending by a previous process are otherwise never delivered.
        async with get_session() as session:
            queued = await requeue_pending_async(session, queue=queue)
        logger.info("startup_requeue_async queued=%s", queued)
    try:
        yield
    finally:
        await queue.stop()


def create_app() -> FastAPI:
    configure_logging()
    settings = get_settings()
    app = FastAPI(title=settings.app_name, lifespan=lifespan)

    @app.exception_handler(PushRelayError)
    async def _pushrelay_exception_handler(request: Request, exc: PushRelayError):
        return await pushrelay_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    # Push endpoints keep their unversioned paths for existing clients.
    app.include_router(push_router)
    app.include_router(messages_router, prefix=f"/{API_VERSION}")
    app.include_router(health_router, prefix=f"/{API_VERSION}")
    return app


app = create_app()
