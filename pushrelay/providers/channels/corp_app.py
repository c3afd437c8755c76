"""Corporate IM application channel (WeChat Work style application messages).

App id format is ``corp_id|agent_id``; the channel secret is the agent
secret; ``account_id`` is the default recipient and ``other`` the client
type, where ``plugin`` clients accept the full set of message dialects.
"""
from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

import httpx

from pushrelay.core.config import get_settings
from pushrelay.core.errors import ChannelConfigError, ChannelSendError
from pushrelay.domain.models import Channel, Message, User
from pushrelay.domain.state import CHANNEL_TYPE_CORP_APP
from pushrelay.persistence.db import SessionLocal
from pushrelay.persistence.repos import channels as channels_repo
from pushrelay.services.telemetry import increment_counter, record_external_call
from pushrelay.services.token_store import TokenStore, get_token_store


logger = logging.getLogger(__name__)

DIALECT_MPNEWS = "mpnews"
DIALECT_NEWS = "news"
DIALECT_TEXTCARD = "textcard"
DIALECT_TEXT = "text"
DIALECT_MARKDOWN = "markdown"

CLIENT_TYPE_PLUGIN = "plugin"

# errcode values meaning the access token is missing, invalid or expired.
TOKEN_REJECTED_CODES = frozenset({40014, 41001, 42001})


@asynccontextmanager
async def _client_scope(client: httpx.AsyncClient | None, timeout_ms: int) -> AsyncIterator[httpx.AsyncClient]:
    # Reuse an injected client; otherwise open a short-lived one bounded by the timeout.
    if client is not None:
        yield client
        return
    async with httpx.AsyncClient(timeout=max(0.2, timeout_ms / 1000.0)) as owned:
        yield owned


def parse_corp_app_id(app_id: str | None) -> tuple[str, str]:
    parts = (app_id or "").split("|")
    if len(parts) != 2:
        raise ChannelConfigError("invalid corp_app configuration: app_id must be 'corp_id|agent_id'")
    return parts[0], parts[1]


def corp_app_token_key(corp_id: str, agent_id: str, agent_secret: str) -> str:
    return f"{corp_id}{agent_id}{agent_secret}"


@dataclass
class CorpAppTokenItem:
    corp_id: str
    agent_id: str
    agent_secret: str
    access_token: str = ""
    client: httpx.AsyncClient | None = field(default=None, repr=False, compare=False)

    def key(self) -> str:
        return corp_app_token_key(self.corp_id, self.agent_id, self.agent_secret)

    def is_filled(self) -> bool:
        return bool(self.corp_id and self.agent_secret and self.agent_id)

    def token(self) -> str:
        return self.access_token

    def clear(self) -> None:
        self.access_token = ""

    async def is_shared(self) -> bool:
        # Queried live so channel edits are reflected without cache invalidation.
        async with SessionLocal() as session:
            count = await channels_repo.count_channels_with_credential(
                session,
                channel_type=CHANNEL_TYPE_CORP_APP,
                secret=self.agent_secret,
                app_id=f"{self.corp_id}|{self.agent_id}",
            )
        return count > 1

    async def refresh(self) -> bool:
        settings = get_settings()
        url = f"{settings.corp_api_base.rstrip('/')}/cgi-bin/gettoken"
        params = {"corpid": self.corp_id, "corpsecret": self.agent_secret}
        try:
            async with _client_scope(self.client, settings.token_refresh_timeout_ms) as client:
                response = await client.get(url, params=params)
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            # Leave the previous token in place; the next send surfaces the failure.
            logger.error("corp_app_token_refresh_failed corp_id=%s agent_id=%s error=%s", self.corp_id, self.agent_id, exc)
            increment_counter("token_refresh_failures_total")
            return False
        errcode = int(payload.get("errcode") or 0) if isinstance(payload, dict) else -1
        if errcode != 0:
            logger.error(
                "corp_app_token_refresh_rejected corp_id=%s agent_id=%s errcode=%s errmsg=%s",
                self.corp_id,
                self.agent_id,
                errcode,
                payload.get("errmsg") if isinstance(payload, dict) else "",
            )
            increment_counter("token_refresh_failures_total")
            return False
        self.access_token = str(payload.get("access_token") or "")
        increment_counter("token_refresh_total")
        logger.info("corp_app_token_refreshed corp_id=%s agent_id=%s", self.corp_id, self.agent_id)
        return True


def _article(article: Any) -> dict[str, Any]:
    return article if isinstance(article, dict) else {}


def select_dialect(message: Message, client_type: str | None) -> str | None:
    # Plugin clients pick by populated fields; other clients only render markdown.
    articles = message.articles or []
    if client_type == CLIENT_TYPE_PLUGIN:
        if articles:
            first = _article(articles[0])
            if first.get("content") and first.get("thumb_media_id"):
                return DIALECT_MPNEWS
            return DIALECT_NEWS
        if message.title:
            return DIALECT_TEXTCARD
        if message.content:
            return DIALECT_TEXT
        return None
    if message.content:
        return DIALECT_MARKDOWN
    return None


def build_corp_app_payload(message: Message, channel: Channel, *, agent_id: str) -> dict[str, Any] | None:
    dialect = select_dialect(message, channel.other)
    if dialect is None:
        return None
    payload: dict[str, Any] = {
        "msgtype": dialect,
        "touser": message.to or channel.account_id or "",
        "agentid": agent_id,
    }
    if dialect == DIALECT_MPNEWS:
        payload[dialect] = {
            "articles": [
                {
                    "title": item.get("title", ""),
                    "thumb_media_id": item.get("thumb_media_id", ""),
                    "author": item.get("author", ""),
                    "content_source_url": item.get("content_source_url", ""),
                    "content": item.get("content", ""),
                    "digest": item.get("digest", ""),
                }
                for item in map(_article, message.articles or [])
            ]
        }
    elif dialect == DIALECT_NEWS:
        payload[dialect] = {
            "articles": [
                {
                    "title": item.get("title", ""),
                    "description": item.get("description", ""),
                    "url": item.get("url", ""),
                    "picurl": item.get("picurl", ""),
                }
                for item in map(_article, message.articles or [])
            ]
        }
    elif dialect == DIALECT_TEXTCARD:
        payload[dialect] = {
            "title": message.title,
            "description": message.description or "",
            "url": message.url or "",
            "btntxt": message.btntxt or "",
        }
    else:
        payload[dialect] = {"content": message.content}
    return payload


class CorpAppSender:
    def __init__(
        self,
        *,
        client: httpx.AsyncClient | None = None,
        token_store: TokenStore | None = None,
    ) -> None:
        self._client = client
        self._token_store = token_store

    def _store(self) -> TokenStore:
        return self._token_store if self._token_store is not None else get_token_store()

    async def _post(self, payload: dict[str, Any], access_token: str) -> tuple[int, str]:
        settings = get_settings()
        url = f"{settings.corp_api_base.rstrip('/')}/cgi-bin/message/send"
        start = time.monotonic()
        try:
            async with _client_scope(self._client, settings.ext_call_timeout_ms) as client:
                response = await client.post(url, params={"access_token": access_token}, json=payload)
            body = response.json()
        except httpx.HTTPError as exc:
            record_external_call(
                integration=CHANNEL_TYPE_CORP_APP,
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            raise ChannelSendError(str(exc) or exc.__class__.__name__) from exc
        except ValueError as exc:
            record_external_call(
                integration=CHANNEL_TYPE_CORP_APP,
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            raise ChannelSendError("corp_app returned a non-JSON response") from exc
        errcode = int(body.get("errcode") or 0) if isinstance(body, dict) else -1
        errmsg = str(body.get("errmsg") or "") if isinstance(body, dict) else "malformed response"
        record_external_call(
            integration=CHANNEL_TYPE_CORP_APP,
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=errcode == 0,
        )
        return errcode, errmsg

    async def send(self, message: Message, user: User, channel: Channel) -> None:
        if message is None or user is None or channel is None:
            raise ChannelSendError("message, user or channel is missing")
        corp_id, agent_id = parse_corp_app_id(channel.app_id)
        agent_secret = channel.secret or ""
        payload = build_corp_app_payload(message, channel, agent_id=agent_id)
        if payload is None:
            raise ChannelSendError("nothing to send: message has no articles, title or content")

        store = self._store()
        key = corp_app_token_key(corp_id, agent_id, agent_secret)

        def _factory() -> CorpAppTokenItem:
            return CorpAppTokenItem(corp_id, agent_id, agent_secret, client=self._client)

        access_token = await store.get_token(key, _factory)
        errcode, errmsg = await self._post(payload, access_token)
        if errcode in TOKEN_REJECTED_CODES:
            logger.warning("corp_app_token_rejected corp_id=%s agent_id=%s errcode=%s", corp_id, agent_id, errcode)
            access_token = await store.recover(key, access_token, _factory)
            errcode, errmsg = await self._post(payload, access_token)
        if errcode != 0:
            raise ChannelSendError(f"corp_app rejected message: {errmsg or 'unknown error'} (errcode={errcode})")
