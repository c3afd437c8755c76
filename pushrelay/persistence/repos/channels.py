from __future__ import annotations

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from pushrelay.domain.models import Channel
from pushrelay.domain.state import ChannelStatus


async def get_channel_by_name(session: AsyncSession, name: str, user_id: int) -> Channel | None:
    # Channel names are unique per owning user.
    result = await session.execute(
        select(Channel).where(Channel.name == name, Channel.user_id == user_id)
    )
    return result.scalar_one_or_none()


async def count_channels_with_credential(
    session: AsyncSession, *, channel_type: str, secret: str, app_id: str
) -> int:
    # Several channel rows may register the same third-party credential under different names.
    result = await session.execute(
        select(func.count())
        .select_from(Channel)
        .where(Channel.type == channel_type, Channel.secret == secret, Channel.app_id == app_id)
    )
    return int(result.scalar() or 0)


async def create_channel(
    session: AsyncSession,
    *,
    user_id: int,
    name: str,
    channel_type: str,
    secret: str | None = None,
    app_id: str | None = None,
    account_id: str | None = None,
    url: str | None = None,
    other: str | None = None,
    token: str | None = None,
    description: str | None = None,
    status: ChannelStatus = ChannelStatus.ENABLED,
) -> Channel:
    channel = Channel(
        user_id=user_id,
        name=name,
        type=channel_type,
        secret=secret,
        app_id=app_id,
        account_id=account_id,
        url=url,
        other=other,
        token=token,
        description=description,
        status=int(status),
    )
    session.add(channel)
    await session.commit()
    return channel
