from __future__ import annotations

import asyncio
import sys

from pushrelay.core.logging import configure_logging
from pushrelay.domain.state import CHANNEL_TYPE_NONE, SaveMessagePolicy
from pushrelay.persistence.db import get_session, init_models
from pushrelay.persistence.repos import channels as channels_repo
from pushrelay.persistence.repos import users as users_repo


DEMO_USERNAME = "demo"
DEMO_TOKEN = "demo-token"
DEMO_CHANNEL = "default"


async def seed() -> bool:
    # Idempotent: an existing demo user is left untouched.
    await init_models()
    async with get_session() as session:
        if await users_repo.get_user_by_username(session, DEMO_USERNAME) is not None:
            return False
        user = await users_repo.create_user(
            session,
            username=DEMO_USERNAME,
            token=DEMO_TOKEN,
            channel=DEMO_CHANNEL,
            save_message_to_database=SaveMessagePolicy.ALLOWED,
        )
        await channels_repo.create_channel(
            session,
            user_id=user.id,
            name=DEMO_CHANNEL,
            channel_type=CHANNEL_TYPE_NONE,
            description="Demo channel that accepts every message without delivering it",
        )
    return True


def main() -> int:
    configure_logging()
    created = asyncio.run(seed())
    print("seeded demo user" if created else "demo user already exists")
    return 0


if __name__ == "__main__":
    sys.exit(main())
