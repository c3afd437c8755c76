from __future__ import annotations

import logging

from pushrelay.core.errors import UnsupportedChannelError
from pushrelay.domain.models import Channel, Message, User
from pushrelay.domain.state import CHANNEL_TYPE_CORP_APP, CHANNEL_TYPE_NONE, CHANNEL_TYPE_WEBHOOK
from pushrelay.providers.channels.base import ChannelSender
from pushrelay.providers.channels.corp_app import CorpAppSender
from pushrelay.providers.channels.none import NoneSender
from pushrelay.providers.channels.webhook import WebhookSender
from pushrelay.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

_senders: dict[str, ChannelSender] = {}


def _default_senders() -> dict[str, ChannelSender]:
    return {
        CHANNEL_TYPE_CORP_APP: CorpAppSender(),
        CHANNEL_TYPE_WEBHOOK: WebhookSender(),
        CHANNEL_TYPE_NONE: NoneSender(),
    }


def _ensure_defaults() -> None:
    if _senders:
        return
    _senders.update(_default_senders())


def register_sender(channel_type: str, sender: ChannelSender) -> None:
    # Later registrations replace earlier ones, which lets tests swap in fakes.
    _ensure_defaults()
    _senders[channel_type] = sender


def get_sender(channel_type: str) -> ChannelSender:
    _ensure_defaults()
    sender = _senders.get(channel_type)
    if sender is None:
        raise UnsupportedChannelError(f"unsupported channel type: {channel_type}")
    return sender


def registered_types() -> list[str]:
    _ensure_defaults()
    return sorted(_senders)


def reset_senders() -> None:
    _senders.clear()


async def send_message(message: Message, user: User, channel: Channel) -> None:
    """Send through the sender registered for ``channel.type``.

    Errors propagate unchanged; status bookkeeping is the caller's job.
    """
    sender = get_sender(channel.type)
    try:
        await sender.send(message, user, channel)
    except Exception:
        increment_counter(f"channel_send_failures_total.{channel.type}")
        raise
    increment_counter(f"channel_send_success_total.{channel.type}")
    logger.info("channel_send_ok type=%s channel=%s user_id=%s", channel.type, channel.name, user.id)
