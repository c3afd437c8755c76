from __future__ import annotations

import pytest

from pushrelay.apps.api.main import create_app, lifespan
from pushrelay.core.config import get_settings
from pushrelay.domain.models import Message
from pushrelay.domain.state import MessageStatus
from pushrelay.persistence.repos import messages as messages_repo
from pushrelay.providers.channels.registry import register_sender
from pushrelay.services.dispatch.orchestrator import save_and_send_message
from pushrelay.services.dispatch.queue import AsyncDispatchQueue, get_dispatch_queue
from pushrelay.services.dispatch.worker import deliver_async_message


class CollectingSender:
    def __init__(self) -> None:
        self.titles: list[str] = []

    async def send(self, message, user, channel) -> None:
        self.titles.append(message.title)


@pytest.fixture
async def leftover(session, make_user, make_channel):
    # An async_pending row whose queue went away with the previous process.
    sender = CollectingSender()
    register_sender("collect", sender)
    user = await make_user("alice")
    channel = await make_channel(user, name="default", channel_type="collect")
    dropped = AsyncDispatchQueue(
        handler=deliver_async_message, maxsize=10, worker_count=1, enqueue_timeout_s=0.01
    )
    message = await save_and_send_message(
        session, user=user, message=Message(title="orphan"), channel=channel, async_=True, queue=dropped
    )
    return sender, message


@pytest.mark.asyncio
async def test_startup_leaves_pending_rows_alone_by_default(session, leftover) -> None:
    sender, message = leftover
    assert get_settings().requeue_async_on_startup is False

    async with lifespan(create_app()):
        await get_dispatch_queue().join()

    assert sender.titles == []
    assert await messages_repo.get_message_status_by_link(session, message.link) == MessageStatus.ASYNC_PENDING


@pytest.mark.asyncio
async def test_startup_requeue_is_opt_in(session, leftover, monkeypatch) -> None:
    sender, message = leftover
    monkeypatch.setenv("REQUEUE_ASYNC_ON_STARTUP", "true")
    get_settings.cache_clear()

    async with lifespan(create_app()):
        await get_dispatch_queue().join()

    assert sender.titles == ["orphan"]
    assert await messages_repo.get_message_status_by_link(session, message.link) == MessageStatus.SENT
