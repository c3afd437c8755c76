from __future__ import annotations

import logging

from pushrelay.domain.models import Channel, Message, User


logger = logging.getLogger(__name__)


class NoneSender:
    # Accepts and discards; useful for users who only keep messages in the database.
    async def send(self, message: Message, user: User, channel: Channel) -> None:
        logger.debug("none_channel_discard user_id=%s channel=%s", user.id, channel.name)
