"""Bounded in-process relay of message ids for asynchronous delivery.

Ids only live in memory: a restart drops queued work and leaves those rows in
``async_pending`` until ``requeue_pending_async`` is run.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

from pushrelay.core.config import get_settings
from pushrelay.core.errors import DeliveryRejectedError
from pushrelay.services.dispatch.worker import deliver_async_message
from pushrelay.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

DeliveryHandler = Callable[[int], Awaitable[Any]]


class AsyncDispatchQueue:
    def __init__(
        self,
        *,
        handler: DeliveryHandler,
        maxsize: int,
        worker_count: int,
        enqueue_timeout_s: float,
    ) -> None:
        self._handler = handler
        self._maxsize = max(1, int(maxsize))
        self._worker_count = max(1, int(worker_count))
        self._enqueue_timeout_s = max(0.0, float(enqueue_timeout_s))
        self._queue: asyncio.Queue[int] = asyncio.Queue(maxsize=self._maxsize)
        self._workers: list[asyncio.Task[None]] = []
        # Ids queued or being delivered; a second enqueue of the same id is dropped.
        self._tracked: set[int] = set()

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._workers)

    def depth(self) -> int:
        return self._queue.qsize()

    def start(self) -> None:
        if self.running:
            return
        self._workers = [
            asyncio.create_task(self._worker(index), name=f"dispatch-worker-{index}")
            for index in range(self._worker_count)
        ]
        logger.info("dispatch_queue_started workers=%s maxsize=%s", self._worker_count, self._maxsize)

    async def stop(self) -> None:
        # Cancel workers without draining; undelivered ids stay async_pending in the database.
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info("dispatch_queue_stopped pending=%s", self.depth())

    async def join(self) -> None:
        await self._queue.join()

    async def enqueue(self, message_id: int) -> bool:
        """Queue ``message_id``; returns False when the id is already queued or in flight.

        Raises DeliveryRejectedError when no slot frees up within the enqueue timeout.
        """
        if message_id in self._tracked:
            return False
        self._tracked.add(message_id)
        try:
            try:
                self._queue.put_nowait(message_id)
            except asyncio.QueueFull:
                await asyncio.wait_for(self._queue.put(message_id), timeout=self._enqueue_timeout_s)
        except asyncio.TimeoutError as exc:
            self._tracked.discard(message_id)
            increment_counter("dispatch_queue_rejected_total")
            raise DeliveryRejectedError("async delivery queue is full; retry later") from exc
        except BaseException:
            self._tracked.discard(message_id)
            raise
        increment_counter("dispatch_queue_enqueued_total")
        return True

    async def _worker(self, index: int) -> None:
        while True:
            message_id = await self._queue.get()
            try:
                await self._handler(message_id)
            except Exception:  # noqa: BLE001 - keep the worker alive while surfacing failures in logs.
                logger.exception("dispatch_worker_failed worker=%s message_id=%s", index, message_id)
            finally:
                self._tracked.discard(message_id)
                self._queue.task_done()


_dispatch_queue: AsyncDispatchQueue | None = None


def get_dispatch_queue() -> AsyncDispatchQueue:
    global _dispatch_queue
    if _dispatch_queue is None:
        settings = get_settings()
        _dispatch_queue = AsyncDispatchQueue(
            handler=deliver_async_message,
            maxsize=settings.dispatch_queue_size,
            worker_count=settings.dispatch_worker_count,
            enqueue_timeout_s=settings.dispatch_enqueue_timeout_ms / 1000.0,
        )
    return _dispatch_queue


def set_dispatch_queue(queue: AsyncDispatchQueue | None) -> None:
    global _dispatch_queue
    _dispatch_queue = queue


def reset_dispatch_queue() -> None:
    set_dispatch_queue(None)
