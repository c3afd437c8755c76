from pushrelay.services.dispatch.orchestrator import (
    DispatchResult,
    PushMessagePayload,
    process_message,
    requeue_pending_async,
    resend_message,
    save_and_send_message,
)
from pushrelay.services.dispatch.queue import (
    AsyncDispatchQueue,
    get_dispatch_queue,
    reset_dispatch_queue,
)
from pushrelay.services.dispatch.worker import deliver_async_message

__all__ = [
    "AsyncDispatchQueue",
    "DispatchResult",
    "PushMessagePayload",
    "deliver_async_message",
    "get_dispatch_queue",
    "process_message",
    "requeue_pending_async",
    "resend_message",
    "reset_dispatch_queue",
    "save_and_send_message",
]
