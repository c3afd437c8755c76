from __future__ import annotations

import time
from typing import Any

import httpx

from pushrelay.core.config import get_settings
from pushrelay.core.errors import ChannelConfigError, ChannelSendError
from pushrelay.domain.models import Channel, Message, User
from pushrelay.domain.state import CHANNEL_TYPE_WEBHOOK
from pushrelay.services.telemetry import record_external_call


def _envelope_error(body: Any) -> tuple[int, str] | None:
    # Receivers may answer 200 with an application-level error code.
    if not isinstance(body, dict):
        return None
    for code_key, message_key in (("error_code", "error_message"), ("errcode", "errmsg")):
        raw = body.get(code_key)
        if raw is None:
            continue
        try:
            code = int(raw)
        except (TypeError, ValueError):
            return -1, f"invalid {code_key}: {raw!r}"
        if code != 0:
            return code, str(body.get(message_key) or "")
        return None
    return None


class WebhookSender:
    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._client = client

    async def send(self, message: Message, user: User, channel: Channel) -> None:
        if not channel.url or not channel.url.startswith(("http://", "https://")):
            raise ChannelConfigError("webhook channel requires an http(s) url")
        payload = {
            "title": message.title,
            "description": message.description,
            "content": message.content,
            "url": message.url,
            "link": message.link,
            "to": message.to or channel.account_id or "",
            "articles": list(message.articles or []),
        }
        headers = {"Content-Type": "application/json"}
        if channel.secret:
            headers["Authorization"] = f"Bearer {channel.secret}"
        settings = get_settings()
        start = time.monotonic()
        try:
            if self._client is not None:
                response = await self._client.post(channel.url, json=payload, headers=headers)
            else:
                timeout_s = max(0.2, settings.ext_call_timeout_ms / 1000.0)
                async with httpx.AsyncClient(timeout=timeout_s) as client:
                    response = await client.post(channel.url, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            record_external_call(
                integration=CHANNEL_TYPE_WEBHOOK,
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            raise ChannelSendError(str(exc) or exc.__class__.__name__) from exc

        failure: str | None = None
        if response.status_code >= 400:
            failure = f"webhook receiver returned HTTP {response.status_code}"
        else:
            try:
                body = response.json()
            except ValueError:
                body = None
            envelope = _envelope_error(body)
            if envelope is not None:
                code, detail = envelope
                failure = f"webhook receiver rejected message: {detail or 'unknown error'} (code={code})"
        record_external_call(
            integration=CHANNEL_TYPE_WEBHOOK,
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=failure is None,
        )
        if failure is not None:
            raise ChannelSendError(failure)
