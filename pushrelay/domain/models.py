from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from pushrelay.domain.state import (
    ChannelStatus,
    MessageStatus,
    RENDER_MODE_MARKDOWN,
    SaveMessagePolicy,
    UserStatus,
)


# Use JSONB on Postgres while keeping SQLite usable for local runs and tests.
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String, unique=True, index=True)
    status: Mapped[int] = mapped_column(Integer, default=int(UserStatus.ENABLED), nullable=False)
    # Optional user-level push token; a match bypasses channel tokens.
    token: Mapped[str | None] = mapped_column(String, nullable=True)
    # Default channel name used when a push request does not name one.
    channel: Mapped[str | None] = mapped_column(String, nullable=True)
    save_message_to_database: Mapped[int] = mapped_column(
        Integer, default=int(SaveMessagePolicy.UNSET), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Channel(Base):
    __tablename__ = "channels"
    __table_args__ = (UniqueConstraint("user_id", "name", name="uq_channels_user_name"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # Selects the sender implementation in the channel registry.
    type: Mapped[str] = mapped_column(String, index=True)
    user_id: Mapped[int] = mapped_column(Integer, index=True)
    name: Mapped[str] = mapped_column(String)
    description: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[int] = mapped_column(Integer, default=int(ChannelStatus.ENABLED), nullable=False)
    # Credential material; meaning depends on the channel type.
    secret: Mapped[str | None] = mapped_column(String, nullable=True)
    # Structured app identifier, e.g. "corp_id|agent_id" for corp_app channels.
    app_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # Default recipient when the message carries no override.
    account_id: Mapped[str | None] = mapped_column(String, nullable=True)
    url: Mapped[str | None] = mapped_column(String, nullable=True)
    # Type-specific discriminator, e.g. the client type selecting a message dialect.
    other: Mapped[str | None] = mapped_column(String, nullable=True)
    token: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Message(Base):
    __tablename__ = "messages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, index=True)
    title: Mapped[str] = mapped_column(String, default="")
    description: Mapped[str] = mapped_column(Text, default="")
    content: Mapped[str] = mapped_column(Text, default="")
    url: Mapped[str] = mapped_column(String, default="")
    btntxt: Mapped[str] = mapped_column(String, default="")
    channel: Mapped[str] = mapped_column(String, default="")
    # Unix seconds assigned at insert time.
    timestamp: Mapped[int] = mapped_column(BigInteger, default=0)
    # Public reference for status lookups and the render page.
    link: Mapped[str] = mapped_column(String, unique=True, index=True)
    to: Mapped[str] = mapped_column("to", String, default="")
    status: Mapped[int] = mapped_column(Integer, default=int(MessageStatus.PENDING), index=True)
    render_mode: Mapped[str] = mapped_column(String, default=RENDER_MODE_MARKDOWN)
    articles: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, default=list)
