from __future__ import annotations

import logging

from fastapi import HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from pushrelay.core.errors import MessageAuthError, PushRelayError


logger = logging.getLogger(__name__)


def failure_payload(message: str, **extra: object) -> dict[str, object]:
    # Every failure carries success=false plus a human-readable message.
    payload: dict[str, object] = {"success": False, "message": message}
    payload.update(extra)
    return payload


def status_code_for(exc: PushRelayError) -> int:
    # Auth failures use 401; other business failures answer 200 with success=false.
    if isinstance(exc, MessageAuthError):
        return 401
    return 200


async def pushrelay_exception_handler(request: Request, exc: PushRelayError) -> JSONResponse:
    return JSONResponse(content=failure_payload(str(exc)), status_code=status_code_for(exc))


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    message = exc.detail if isinstance(exc.detail, str) else "Request failed"
    return JSONResponse(content=failure_payload(message), status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        content=failure_payload("Validation error", errors=jsonable_encoder(exc.errors())),
        status_code=422,
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error payload.
    logger.exception("unhandled_request_error path=%s", request.url.path)
    return JSONResponse(content=failure_payload("Internal server error"), status_code=500)
