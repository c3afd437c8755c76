from __future__ import annotations

import time

from sqlalchemy import delete, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from pushrelay.core.errors import DatabaseError, MessageNotFoundError
from pushrelay.domain.models import Message
from pushrelay.domain.state import TERMINAL_MESSAGE_STATUSES, UNSAVED_LINK, MessageStatus


async def insert_message(session: AsyncSession, message: Message, *, user_id: int) -> Message:
    # Insert with pending status; the link must already be collision resistant.
    message.timestamp = int(time.time())
    message.user_id = user_id
    message.status = int(MessageStatus.PENDING)
    session.add(message)
    try:
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise DatabaseError("message link already exists") from exc
    except SQLAlchemyError as exc:
        await session.rollback()
        raise DatabaseError("failed to save message") from exc
    return message


async def update_status(session: AsyncSession, message: Message, status: MessageStatus) -> bool:
    """Transition a message's status in a single guarded UPDATE.

    Rows already in a terminal status are never touched, and an
    ``async_pending`` row never falls back to ``pending``. Returns whether
    the row transitioned.
    """
    stmt = (
        update(Message)
        .where(
            Message.id == message.id,
            Message.status.not_in([int(value) for value in TERMINAL_MESSAGE_STATUSES]),
        )
        .values(status=int(status))
        .execution_options(synchronize_session=False)
    )
    if status == MessageStatus.PENDING:
        stmt = stmt.where(Message.status == int(MessageStatus.PENDING))
    try:
        result = await session.execute(stmt)
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        raise DatabaseError("failed to update message status") from exc
    transitioned = (result.rowcount or 0) > 0
    if transitioned:
        # Mirror the committed value without marking the instance dirty.
        set_committed_value(message, "status", int(status))
    return transitioned


async def get_message_by_id(session: AsyncSession, message_id: int) -> Message | None:
    return await session.get(Message, message_id)


async def get_message_by_ids(session: AsyncSession, message_id: int, user_id: int) -> Message:
    # Both ids must match so users cannot read each other's messages.
    if not message_id or not user_id:
        raise ValueError("message id and user id are required")
    result = await session.execute(
        select(Message).where(Message.id == message_id, Message.user_id == user_id)
    )
    message = result.scalar_one_or_none()
    if message is None:
        raise MessageNotFoundError("message not found")
    return message


async def get_message_by_link(session: AsyncSession, link: str) -> Message:
    if not link:
        raise ValueError("link is empty")
    result = await session.execute(select(Message).where(Message.link == link))
    message = result.scalar_one_or_none()
    if message is None:
        raise MessageNotFoundError("message not found")
    return message


async def get_message_status_by_link(session: AsyncSession, link: str) -> MessageStatus:
    if not link:
        raise ValueError("link is empty")
    if link == UNSAVED_LINK:
        # Unsaved messages never reach the database, so there is nothing to query.
        return MessageStatus.UNKNOWN
    status = await session.scalar(select(Message.status).where(Message.link == link))
    if status is None:
        raise MessageNotFoundError("message not found")
    return MessageStatus(status)


async def list_messages_by_user(
    session: AsyncSession, user_id: int, *, offset: int, limit: int
) -> list[Message]:
    result = await session.execute(
        select(Message)
        .where(Message.user_id == user_id)
        .order_by(Message.id.desc())
        .offset(max(0, offset))
        .limit(max(1, limit))
    )
    return list(result.scalars().all())


async def search_messages(
    session: AsyncSession, keyword: str, *, user_id: int | None = None
) -> list[Message]:
    # Match an exact id or a prefix of title/description/content.
    pattern = f"{keyword}%"
    clauses = [
        Message.title.like(pattern),
        Message.description.like(pattern),
        Message.content.like(pattern),
    ]
    if keyword.isdigit():
        clauses.append(Message.id == int(keyword))
    stmt = select(Message).where(or_(*clauses))
    if user_id is not None:
        stmt = stmt.where(Message.user_id == user_id)
    result = await session.execute(stmt.order_by(Message.id.desc()))
    return list(result.scalars().all())


async def list_async_pending_ids(session: AsyncSession) -> list[int]:
    result = await session.execute(
        select(Message.id)
        .where(Message.status == int(MessageStatus.ASYNC_PENDING))
        .order_by(Message.id.asc())
    )
    return [int(value) for value in result.scalars().all()]


async def delete_message_by_id(session: AsyncSession, message_id: int, user_id: int) -> None:
    # Require the owning user id so a user cannot delete someone else's message.
    message = await get_message_by_ids(session, message_id, user_id)
    await session.delete(message)
    await session.commit()


async def delete_all_messages(session: AsyncSession, user_id: int) -> int:
    result = await session.execute(delete(Message).where(Message.user_id == user_id))
    await session.commit()
    return int(result.rowcount or 0)
