from __future__ import annotations

import json
from typing import Any

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from pushrelay.apps.api.deps import get_db
from pushrelay.apps.api.errors import failure_payload, status_code_for
from pushrelay.core.errors import PushRelayError
from pushrelay.services.dispatch.orchestrator import (
    PushMessagePayload,
    process_message,
    resolve_push_user,
)


router = APIRouter(prefix="/push", tags=["push"])


def _bearer_token(request: Request) -> str:
    header = request.headers.get("Authorization", "")
    return header[len("Bearer "):] if header.startswith("Bearer ") else header


async def _push(
    session: AsyncSession,
    request: Request,
    username: str,
    raw: dict[str, Any],
    *,
    require_body: bool = False,
) -> JSONResponse:
    try:
        payload = PushMessagePayload.model_validate(raw)
    except ValidationError as exc:
        return JSONResponse(content=failure_payload(f"invalid push request: {exc.errors()[0]['msg']}"))
    if require_body and payload.is_empty():
        return JSONResponse(
            content=failure_payload(
                "request body is empty; send JSON with Content-Type application/json or a form post"
            )
        )
    if not payload.token:
        payload.token = request.query_params.get("token") or _bearer_token(request)
    try:
        user = await resolve_push_user(session, username)
        result = await process_message(session, payload, user)
    except PushRelayError as exc:
        return JSONResponse(content=failure_payload(str(exc)), status_code=status_code_for(exc))
    return JSONResponse(content={"success": result.success, "message": result.message, "uuid": result.link})


@router.get("/{username}")
async def get_push_message(
    username: str,
    request: Request,
    session: AsyncSession = Depends(get_db),
) -> JSONResponse:
    return await _push(session, request, username, dict(request.query_params))


@router.post("/{username}")
async def post_push_message(
    username: str,
    request: Request,
    session: AsyncSession = Depends(get_db),
) -> JSONResponse:
    content_type = request.headers.get("Content-Type", "").lower()
    if "application/json" in content_type:
        try:
            raw = json.loads(await request.body() or b"{}")
        except ValueError:
            return JSONResponse(content=failure_payload("request body is not valid JSON"))
        if not isinstance(raw, dict):
            return JSONResponse(content=failure_payload("request body must be a JSON object"))
    else:
        form = await request.form()
        raw = {key: value for key, value in form.items() if isinstance(value, str)}
    return await _push(session, request, username, raw, require_body=True)
