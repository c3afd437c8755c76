from __future__ import annotations

import asyncio
import logging

from pushrelay.core.logging import configure_logging
from pushrelay.persistence.db import get_session
from pushrelay.services.dispatch.orchestrator import requeue_pending_async
from pushrelay.services.dispatch.queue import get_dispatch_queue


logger = logging.getLogger(__name__)


async def _main() -> None:
    # Deliver rows a previous process left async_pending, then exit once the queue drains.
    configure_logging()
    queue = get_dispatch_queue()
    queue.start()
    try:
        async with get_session() as session:
            queued = await requeue_pending_async(session, queue=queue)
        await queue.join()
    finally:
        await queue.stop()
    logger.info("requeue_async_script_done queued=%s", queued)


if __name__ == "__main__":
    asyncio.run(_main())
