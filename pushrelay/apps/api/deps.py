from __future__ import annotations

from typing import AsyncGenerator

from fastapi import Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from pushrelay.persistence.db import get_session


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


async def get_current_user_id(x_user_id: str | None = Header(default=None)) -> int:
    # Dashboard authentication runs upstream and forwards the resolved user id.
    if not x_user_id or not x_user_id.isdigit() or int(x_user_id) <= 0:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="missing or invalid X-User-Id header",
        )
    return int(x_user_id)
