from __future__ import annotations

from fastapi import APIRouter
from pydantic import BaseModel

from pushrelay.providers.channels.registry import registered_types
from pushrelay.services.dispatch.queue import get_dispatch_queue
from pushrelay.services.telemetry import external_call_summary


router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    status: str
    dispatch_queue_running: bool
    dispatch_queue_depth: int
    channel_types: list[str]
    # Per channel type call volume, failures and mean latency over the last five minutes.
    external_calls: dict[str, dict[str, float]]


@router.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    queue = get_dispatch_queue()
    return HealthResponse(
        status="ok",
        dispatch_queue_running=queue.running,
        dispatch_queue_depth=queue.depth(),
        channel_types=registered_types(),
        external_calls=external_call_summary(),
    )
