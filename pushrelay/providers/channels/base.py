from __future__ import annotations

from typing import Protocol

from pushrelay.domain.models import Channel, Message, User


class ChannelSender(Protocol):
    async def send(self, message: Message, user: User, channel: Channel) -> None:
        ...
