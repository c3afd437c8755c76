from __future__ import annotations

import os
import tempfile

# Point the engine at a throwaway SQLite file before any pushrelay module builds it.
_TEST_DB_PATH = os.path.join(tempfile.gettempdir(), f"pushrelay-test-{os.getpid()}.db")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TEST_DB_PATH}"

import pytest

from pushrelay.core.config import get_settings
from pushrelay.domain.models import Channel, User
from pushrelay.domain.state import CHANNEL_TYPE_NONE, SaveMessagePolicy, UserStatus
from pushrelay.persistence.db import SessionLocal, drop_models, engine, init_models
from pushrelay.persistence.repos import channels as channels_repo
from pushrelay.persistence.repos import users as users_repo
from pushrelay.providers.channels.registry import reset_senders
from pushrelay.services.dispatch.queue import reset_dispatch_queue
from pushrelay.services.telemetry import reset_telemetry
from pushrelay.services.token_store import reset_token_store
from pushrelay.services.user_sync import reset_user_sync


@pytest.fixture(autouse=True)
async def fresh_database() -> None:
    # Each test gets empty tables and process singletons bound to its own event loop.
    get_settings.cache_clear()
    reset_token_store()
    reset_senders()
    reset_dispatch_queue()
    reset_user_sync()
    reset_telemetry()
    await drop_models()
    await init_models()
    yield
    reset_dispatch_queue()
    get_settings.cache_clear()
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    await engine.dispose()


@pytest.fixture
async def session():
    async with SessionLocal() as db_session:
        yield db_session


@pytest.fixture
async def make_user(session):
    async def _make(
        username: str = "alice",
        *,
        token: str | None = None,
        channel: str | None = None,
        save_message_to_database: SaveMessagePolicy = SaveMessagePolicy.UNSET,
        status: UserStatus = UserStatus.ENABLED,
    ) -> User:
        return await users_repo.create_user(
            session,
            username=username,
            token=token,
            channel=channel,
            save_message_to_database=save_message_to_database,
            status=status,
        )

    return _make


@pytest.fixture
async def make_channel(session):
    async def _make(user: User, name: str = "default", channel_type: str = CHANNEL_TYPE_NONE, **fields) -> Channel:
        return await channels_repo.create_channel(
            session,
            user_id=user.id,
            name=name,
            channel_type=channel_type,
            **fields,
        )

    return _make
