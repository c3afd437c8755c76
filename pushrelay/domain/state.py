from __future__ import annotations

from enum import IntEnum


class MessageStatus(IntEnum):
    # Numeric values are part of the public status endpoint contract.
    UNKNOWN = 0
    PENDING = 1
    SENT = 2
    FAILED = 3
    ASYNC_PENDING = 4


TERMINAL_MESSAGE_STATUSES = (MessageStatus.SENT, MessageStatus.FAILED)


class UserStatus(IntEnum):
    ENABLED = 1
    DISABLED = 2


class ChannelStatus(IntEnum):
    ENABLED = 1
    DISABLED = 2


class SaveMessagePolicy(IntEnum):
    # Per-user override of the process-wide persistence flag.
    UNSET = 0
    ALLOWED = 1
    NOT_ALLOWED = 2


# Link assigned to messages that were never written to the database.
UNSAVED_LINK = "unsaved"

RENDER_MODE_MARKDOWN = "markdown"
RENDER_MODE_CODE = "code"
RENDER_MODE_RAW = "raw"

CHANNEL_TYPE_CORP_APP = "corp_app"
CHANNEL_TYPE_WEBHOOK = "webhook"
CHANNEL_TYPE_NONE = "none"
