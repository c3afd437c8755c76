from __future__ import annotations

import asyncio

import pytest

from pushrelay.core.errors import DeliveryRejectedError
from pushrelay.services.dispatch.queue import AsyncDispatchQueue
from pushrelay.services.telemetry import get_counter


@pytest.mark.asyncio
async def test_full_queue_rejects_after_timeout() -> None:
    async def handler(_message_id: int) -> None:
        return None

    # Workers are never started, so the single slot stays occupied.
    queue = AsyncDispatchQueue(handler=handler, maxsize=1, worker_count=1, enqueue_timeout_s=0.01)
    assert await queue.enqueue(1) is True
    with pytest.raises(DeliveryRejectedError):
        await queue.enqueue(2)
    assert queue.depth() == 1
    assert get_counter("dispatch_queue_rejected_total") == 1


@pytest.mark.asyncio
async def test_enqueue_waits_for_a_free_slot() -> None:
    handled: list[int] = []

    async def handler(message_id: int) -> None:
        handled.append(message_id)

    queue = AsyncDispatchQueue(handler=handler, maxsize=1, worker_count=1, enqueue_timeout_s=1.0)
    await queue.enqueue(1)
    queue.start()
    try:
        assert await queue.enqueue(2) is True
        await queue.join()
    finally:
        await queue.stop()
    assert handled == [1, 2]


@pytest.mark.asyncio
async def test_worker_survives_handler_errors() -> None:
    handled: list[int] = []

    async def handler(message_id: int) -> None:
        if message_id == 1:
            raise RuntimeError("boom")
        handled.append(message_id)

    queue = AsyncDispatchQueue(handler=handler, maxsize=10, worker_count=1, enqueue_timeout_s=0.1)
    queue.start()
    try:
        await queue.enqueue(1)
        await queue.enqueue(2)
        await queue.join()
        assert queue.running
    finally:
        await queue.stop()
    assert handled == [2]
    assert not queue.running


@pytest.mark.asyncio
async def test_duplicate_ids_are_dropped_while_in_flight() -> None:
    release = asyncio.Event()
    handled: list[int] = []

    async def handler(message_id: int) -> None:
        await release.wait()
        handled.append(message_id)

    queue = AsyncDispatchQueue(handler=handler, maxsize=10, worker_count=2, enqueue_timeout_s=0.1)
    queue.start()
    try:
        assert await queue.enqueue(7) is True
        await asyncio.sleep(0)
        assert await queue.enqueue(7) is False
        release.set()
        await queue.join()
        # Once delivered the id may be queued again.
        assert await queue.enqueue(7) is True
        await queue.join()
    finally:
        await queue.stop()
    assert handled == [7, 7]
