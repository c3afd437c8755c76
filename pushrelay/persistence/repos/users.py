from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pushrelay.domain.models import User
from pushrelay.domain.state import SaveMessagePolicy, UserStatus


async def get_user_by_id(session: AsyncSession, user_id: int) -> User | None:
    return await session.get(User, user_id)


async def get_user_by_username(session: AsyncSession, username: str) -> User | None:
    result = await session.execute(select(User).where(User.username == username))
    return result.scalar_one_or_none()


async def create_user(
    session: AsyncSession,
    *,
    username: str,
    token: str | None = None,
    channel: str | None = None,
    save_message_to_database: SaveMessagePolicy = SaveMessagePolicy.UNSET,
    status: UserStatus = UserStatus.ENABLED,
) -> User:
    user = User(
        username=username,
        token=token,
        channel=channel,
        save_message_to_database=int(save_message_to_database),
        status=int(status),
    )
    session.add(user)
    await session.commit()
    return user
