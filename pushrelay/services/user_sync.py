from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Any

from pushrelay.domain.models import Message


logger = logging.getLogger(__name__)

_SUBSCRIBER_QUEUE_SIZE = 100

_subscribers: dict[int, set[asyncio.Queue[dict[str, Any]]]] = defaultdict(set)
_background_tasks: set[asyncio.Task[None]] = set()


def subscribe(user_id: int) -> asyncio.Queue[dict[str, Any]]:
    # Companion clients (e.g. a desktop notifier) receive a copy of every pushed message.
    queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=_SUBSCRIBER_QUEUE_SIZE)
    _subscribers[user_id].add(queue)
    return queue


def unsubscribe(user_id: int, queue: asyncio.Queue[dict[str, Any]]) -> None:
    listeners = _subscribers.get(user_id)
    if not listeners:
        return
    listeners.discard(queue)
    if not listeners:
        _subscribers.pop(user_id, None)


def message_snapshot(message: Message) -> dict[str, Any]:
    # Copy plain values so the background task never touches the ORM instance.
    return {
        "title": message.title,
        "description": message.description,
        "content": message.content,
        "url": message.url,
        "link": message.link,
        "channel": message.channel,
    }


async def sync_message_to_user(snapshot: dict[str, Any], user_id: int) -> int:
    # Returns the number of subscribers that received the message.
    delivered = 0
    for queue in list(_subscribers.get(user_id, ())):
        try:
            queue.put_nowait(dict(snapshot))
            delivered += 1
        except asyncio.QueueFull:
            logger.warning("user_sync_subscriber_full user_id=%s", user_id)
    return delivered


def schedule_user_sync(message: Message, user_id: int) -> asyncio.Task[None]:
    """Run the user sync in the background; its failures never reach the caller."""
    snapshot = message_snapshot(message)

    async def _run() -> None:
        try:
            await sync_message_to_user(snapshot, user_id)
        except Exception:  # noqa: BLE001 - side channel must not affect the primary send.
            logger.exception("user_sync_failed user_id=%s", user_id)

    task = asyncio.create_task(_run())
    # Hold a reference until completion so the task is not garbage collected mid-flight.
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task


def reset_user_sync() -> None:
    _subscribers.clear()
