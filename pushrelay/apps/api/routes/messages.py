from __future__ import annotations

import asyncio
import json
from typing import Any, AsyncGenerator

from fastapi import APIRouter, Depends, Path, Query, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict
from sqlalchemy.ext.asyncio import AsyncSession

from pushrelay.apps.api.deps import get_current_user_id, get_db
from pushrelay.core.config import get_settings
from pushrelay.persistence.repos import messages as messages_repo
from pushrelay.services.dispatch.orchestrator import resend_message
from pushrelay.services.user_sync import subscribe, unsubscribe


router = APIRouter(prefix="/messages", tags=["messages"])

_STREAM_POLL_S = 0.5


class MessageOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str
    description: str
    content: str
    url: str
    btntxt: str
    channel: str
    timestamp: int
    link: str
    to: str
    status: int
    render_mode: str
    articles: list[dict[str, Any]] | None = None


def _serialize(message: Any) -> dict[str, Any]:
    return MessageOut.model_validate(message).model_dump()


# Literal paths are declared before /{message_id} so they are not captured by it.
@router.get("/search")
async def search_messages(
    keyword: str = Query(default=""),
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db),
) -> dict:
    messages = await messages_repo.search_messages(session, keyword, user_id=user_id)
    return {"success": True, "message": "", "data": [_serialize(item) for item in messages]}


@router.get("/status/{link}")
async def get_message_status(link: str, session: AsyncSession = Depends(get_db)) -> dict:
    # Public by link, like the message page itself.
    status = await messages_repo.get_message_status_by_link(session, link)
    return {"success": True, "message": "", "status": int(status)}


def _sse_message(payload: dict[str, Any]) -> str:
    data = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
    return f"event: message\ndata: {data}\n\n"


async def _message_events(
    user_id: int,
    request: Request,
    poll_s: float = _STREAM_POLL_S,
) -> AsyncGenerator[str, None]:
    inbox = subscribe(user_id)
    try:
        while True:
            if await request.is_disconnected():
                break
            try:
                snapshot = await asyncio.wait_for(inbox.get(), timeout=poll_s)
            except asyncio.TimeoutError:
                continue
            yield _sse_message(snapshot)
    finally:
        # Runs on client disconnect and on generator close alike.
        unsubscribe(user_id, inbox)


@router.get("/stream")
async def stream_messages(
    request: Request,
    user_id: int = Depends(get_current_user_id),
) -> StreamingResponse:
    # Companion clients receive a copy of each pushed message as it is dispatched.
    headers = {
        "Cache-Control": "no-cache",
        "Content-Type": "text/event-stream",
        "Connection": "keep-alive",
    }
    return StreamingResponse(
        _message_events(user_id, request),
        headers=headers,
        media_type="text/event-stream",
    )


@router.get("")
async def list_messages(
    p: int = Query(default=0, ge=0),
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db),
) -> dict:
    page_size = get_settings().items_per_page
    messages = await messages_repo.list_messages_by_user(
        session, user_id, offset=p * page_size, limit=page_size
    )
    return {"success": True, "message": "", "data": [_serialize(item) for item in messages]}


@router.get("/{message_id}")
async def get_message(
    message_id: int = Path(ge=1),
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db),
) -> dict:
    message = await messages_repo.get_message_by_ids(session, message_id, user_id)
    return {"success": True, "message": "", "data": _serialize(message)}


@router.post("/{message_id}/resend")
async def resend(
    message_id: int = Path(ge=1),
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db),
) -> dict:
    message = await resend_message(session, message_id=message_id, user_id=user_id)
    return {"success": True, "message": "", "uuid": message.link}


@router.delete("/{message_id}")
async def delete_message(
    message_id: int = Path(ge=1),
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db),
) -> dict:
    await messages_repo.delete_message_by_id(session, message_id, user_id)
    return {"success": True, "message": ""}


@router.delete("")
async def delete_all_messages(
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db),
) -> dict:
    # Only the caller's own history is cleared.
    deleted = await messages_repo.delete_all_messages(session, user_id)
    return {"success": True, "message": "", "deleted": deleted}
