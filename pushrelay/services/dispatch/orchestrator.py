from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from sqlalchemy.ext.asyncio import AsyncSession

from pushrelay.core.config import get_settings
from pushrelay.core.errors import (
    AsyncPermissionError,
    ChannelDisabledError,
    ChannelNotFoundError,
    DatabaseError,
    DeliveryRejectedError,
    MessageAuthError,
    UserDisabledError,
    UserNotFoundError,
)
from pushrelay.domain.models import Channel, Message, User
from pushrelay.domain.state import (
    ChannelStatus,
    MessageStatus,
    RENDER_MODE_CODE,
    RENDER_MODE_MARKDOWN,
    SaveMessagePolicy,
    UNSAVED_LINK,
    UserStatus,
)
from pushrelay.persistence.repos import channels as channels_repo
from pushrelay.persistence.repos import messages as messages_repo
from pushrelay.persistence.repos import users as users_repo
from pushrelay.providers.channels.registry import send_message
from pushrelay.services.dispatch.queue import AsyncDispatchQueue, get_dispatch_queue
from pushrelay.services.telemetry import increment_counter
from pushrelay.services.user_sync import schedule_user_sync


logger = logging.getLogger(__name__)


class ArticlePayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    # news fields
    title: str = ""
    description: str = ""
    url: str = ""
    picurl: str = ""
    # mpnews fields
    thumb_media_id: str = ""
    author: str = ""
    content_source_url: str = ""
    content: str = ""
    digest: str = ""


class PushMessagePayload(BaseModel):
    # Inbound push request; token, async flag and ServerChan aliases are never persisted.
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    title: str = ""
    description: str = ""
    content: str = ""
    url: str = ""
    btntxt: str = ""
    channel: str = ""
    token: str = ""
    to: str = ""
    desp: str = ""
    short: str = ""
    openid: str = ""
    async_: bool = Field(default=False, alias="async")
    render_mode: str = ""
    articles: list[ArticlePayload] = Field(default_factory=list)

    @field_validator("articles", mode="before")
    @classmethod
    def _parse_articles(cls, value: Any) -> Any:
        # Query strings and form posts carry articles as a JSON string.
        if value is None or value == "":
            return []
        if isinstance(value, str):
            try:
                return json.loads(value)
            except ValueError:
                logger.warning("push_articles_parse_failed")
                return []
        return value

    @model_validator(mode="after")
    def _apply_serverchan_aliases(self) -> "PushMessagePayload":
        # Keep compatible with ServerChan-style clients.
        if not self.description:
            self.description = self.short
        if not self.content:
            self.content = self.desp
        if not self.to:
            self.to = self.openid
        return self

    def is_empty(self) -> bool:
        return not (self.title or self.description or self.content or self.channel or self.token)


@dataclass(frozen=True)
class DispatchResult:
    success: bool
    message: str
    link: str


def new_message_link() -> str:
    return uuid4().hex


def authorize_message(message_token: str, user_token: str | None, channel_token: str | None) -> bool:
    # A matching user token always passes; otherwise a channel token, when set, must match.
    if user_token and message_token == user_token:
        return True
    if channel_token and message_token != channel_token:
        return False
    return True


def persistence_permitted(user: User) -> bool:
    settings = get_settings()
    return bool(
        settings.message_persistence_enabled
        or user.save_message_to_database == int(SaveMessagePolicy.ALLOWED)
    )


async def resolve_push_user(session: AsyncSession, username: str) -> User:
    user = await users_repo.get_user_by_username(session, username)
    if user is None:
        raise UserNotFoundError("user does not exist")
    if user.status == int(UserStatus.DISABLED):
        raise UserDisabledError("user has been disabled")
    return user


async def _finalize(
    session: AsyncSession,
    message: Message,
    *,
    async_: bool,
    success: bool,
    queue: AsyncDispatchQueue | None,
) -> None:
    # Runs exactly once per persisted dispatch, whichever path the send took.
    if async_:
        status = MessageStatus.ASYNC_PENDING
    else:
        status = MessageStatus.SENT if success else MessageStatus.FAILED
    try:
        await messages_repo.update_status(session, message, status)
    except DatabaseError:
        # A completed send is never reversed because its bookkeeping failed.
        logger.exception("message_status_update_failed message_id=%s status=%s", message.id, status.name)
    if not async_:
        return
    try:
        await (queue or get_dispatch_queue()).enqueue(message.id)
    except DeliveryRejectedError:
        try:
            await messages_repo.update_status(session, message, MessageStatus.FAILED)
        except DatabaseError:
            logger.exception("message_status_update_failed message_id=%s status=FAILED", message.id)
        raise


async def save_and_send_message(
    session: AsyncSession,
    *,
    user: User,
    message: Message,
    channel: Channel,
    async_: bool = False,
    queue: AsyncDispatchQueue | None = None,
) -> Message:
    """Persist (when permitted) and deliver one message.

    Synchronous sends propagate the channel error after the status has been
    finalized to ``failed``. Asynchronous sends return once the message is
    ``async_pending`` and queued; their outcome is only visible via status.
    """
    if channel.status != int(ChannelStatus.ENABLED):
        raise ChannelDisabledError("channel is disabled")
    message.channel = channel.name
    settings = get_settings()
    increment_counter("messages_total")
    message.link = new_message_link()
    if not message.url:
        message.url = f"{settings.server_address.rstrip('/')}/message/{message.link}"

    if not persistence_permitted(user):
        if async_:
            raise AsyncPermissionError("asynchronous delivery requires message persistence permission")
        message.link = UNSAVED_LINK
        schedule_user_sync(message, user.id)
        try:
            await send_message(message, user, channel)
        except Exception as exc:
            logger.error("message_send_failed user_id=%s channel=%s error=%s", user.id, channel.name, exc)
            raise
        return message

    # Insert failures abort the dispatch; nothing is sent without a record.
    await messages_repo.insert_message(session, message, user_id=user.id)
    schedule_user_sync(message, user.id)
    success = False
    try:
        if not async_:
            try:
                await send_message(message, user, channel)
            except Exception as exc:
                logger.error("message_send_failed message_id=%s channel=%s error=%s", message.id, channel.name, exc)
                raise
        success = True
    finally:
        await _finalize(session, message, async_=async_, success=success, queue=queue)
    return message


async def process_message(
    session: AsyncSession,
    payload: PushMessagePayload,
    user: User,
    *,
    need_auth: bool = True,
    queue: AsyncDispatchQueue | None = None,
) -> DispatchResult:
    settings = get_settings()
    channel_name = payload.channel or user.channel or settings.default_channel_name
    channel = await channels_repo.get_channel_by_name(session, channel_name, user.id)
    if channel is None:
        raise ChannelNotFoundError(f"invalid channel name: {channel_name}")
    if need_auth and not authorize_message(payload.token, user.token, channel.token):
        if not payload.token:
            raise MessageAuthError("a push token is required by this user or channel")
        raise MessageAuthError("invalid token")

    content = payload.content
    if payload.render_mode == RENDER_MODE_CODE and content:
        content = f"```\n{content}\n```"
    message = Message(
        title=payload.title or settings.system_name,
        description=payload.description,
        content=content,
        url=payload.url,
        btntxt=payload.btntxt,
        channel=channel.name,
        to=payload.to,
        render_mode=payload.render_mode or RENDER_MODE_MARKDOWN,
        articles=[article.model_dump() for article in payload.articles],
    )
    await save_and_send_message(
        session,
        user=user,
        message=message,
        channel=channel,
        async_=payload.async_,
        queue=queue,
    )
    return DispatchResult(success=True, message="", link=message.link)


async def resend_message(session: AsyncSession, *, message_id: int, user_id: int) -> Message:
    # Re-dispatch a stored message synchronously as a new record with a fresh link.
    original = await messages_repo.get_message_by_ids(session, message_id, user_id)
    user = await users_repo.get_user_by_id(session, user_id)
    if user is None:
        raise UserNotFoundError("user does not exist")
    channel = await channels_repo.get_channel_by_name(session, original.channel, user.id)
    if channel is None:
        raise ChannelNotFoundError(f"invalid channel name: {original.channel}")
    copy = Message(
        title=original.title,
        description=original.description,
        content=original.content,
        url=original.url,
        btntxt=original.btntxt,
        channel=original.channel,
        to=original.to,
        render_mode=original.render_mode,
        articles=list(original.articles or []),
    )
    return await save_and_send_message(session, user=user, message=copy, channel=channel)


async def requeue_pending_async(session: AsyncSession, *, queue: AsyncDispatchQueue | None = None) -> int:
    """Re-enqueue every ``async_pending`` row, e.g. after a restart dropped the queue.

    Stops at the first rejected enqueue and returns how many ids were queued.
    """
    target = queue or get_dispatch_queue()
    queued = 0
    for message_id in await messages_repo.list_async_pending_ids(session):
        try:
            if await target.enqueue(message_id):
                queued += 1
        except DeliveryRejectedError:
            logger.warning("requeue_async_rejected queued=%s next_message_id=%s", queued, message_id)
            break
    logger.info("requeue_async_done queued=%s", queued)
    return queued
