from __future__ import annotations

import logging

from pushrelay.core.errors import (
    ChannelDisabledError,
    ChannelNotFoundError,
    DatabaseError,
    UserNotFoundError,
)
from pushrelay.domain.state import ChannelStatus, MessageStatus
from pushrelay.persistence.db import SessionLocal
from pushrelay.persistence.repos import channels as channels_repo
from pushrelay.persistence.repos import messages as messages_repo
from pushrelay.persistence.repos import users as users_repo
from pushrelay.providers.channels.registry import send_message


logger = logging.getLogger(__name__)


async def deliver_async_message(message_id: int) -> MessageStatus | None:
    # Consume one queued message id: send it and finalize sent/failed in its own session.
    async with SessionLocal() as session:
        message = await messages_repo.get_message_by_id(session, message_id)
        if message is None:
            logger.warning("async_delivery_missing_message message_id=%s", message_id)
            return None
        if message.status != int(MessageStatus.ASYNC_PENDING):
            # Already finalized by an earlier delivery; a duplicate id must not resend.
            logger.info("async_delivery_skipped message_id=%s status=%s", message_id, message.status)
            return None
        status = MessageStatus.FAILED
        try:
            user = await users_repo.get_user_by_id(session, message.user_id)
            if user is None:
                raise UserNotFoundError(f"user {message.user_id} not found")
            channel = await channels_repo.get_channel_by_name(session, message.channel, user.id)
            if channel is None:
                raise ChannelNotFoundError(f"invalid channel name: {message.channel}")
            if channel.status != int(ChannelStatus.ENABLED):
                raise ChannelDisabledError("channel is disabled")
            await send_message(message, user, channel)
            status = MessageStatus.SENT
        except Exception as exc:  # noqa: BLE001 - async failures are only observable via status.
            logger.warning("async_delivery_failed message_id=%s error=%s", message_id, exc)
        finally:
            try:
                await messages_repo.update_status(session, message, status)
            except DatabaseError:
                logger.exception("async_delivery_status_update_failed message_id=%s", message_id)
    return status
