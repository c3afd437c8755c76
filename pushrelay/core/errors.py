from __future__ import annotations


class PushRelayError(Exception):
    """Base error for pushrelay."""


class ChannelConfigError(PushRelayError):
    """Malformed or incomplete channel configuration; never retried."""


class ChannelNotFoundError(PushRelayError):
    """No channel with the requested name exists for the user."""


class ChannelDisabledError(PushRelayError):
    """Channel exists but is disabled."""


class UnsupportedChannelError(ChannelConfigError):
    """No sender is registered for the channel type."""


class ChannelSendError(PushRelayError):
    """Third-party transport or application failure during a send."""


class AsyncPermissionError(PushRelayError):
    """Asynchronous delivery requested without persistence permission."""


class DeliveryRejectedError(PushRelayError):
    """The async delivery queue could not accept the message in time."""


class MessageAuthError(PushRelayError):
    """Push token missing or not accepted by the user or channel."""


class MessageNotFoundError(PushRelayError):
    """No message matches the lookup."""


class UserNotFoundError(PushRelayError):
    """No user matches the lookup."""


class UserDisabledError(PushRelayError):
    """User is disabled and may not push messages."""


class DatabaseError(PushRelayError):
    """Database layer failure."""
