from __future__ import annotations

import json

import httpx
import pytest

from pushrelay.core.errors import ChannelConfigError, ChannelSendError
from pushrelay.domain.models import Channel, Message, User
from pushrelay.domain.state import CHANNEL_TYPE_CORP_APP
from pushrelay.providers.channels.corp_app import (
    CorpAppSender,
    build_corp_app_payload,
    corp_app_token_key,
    select_dialect,
)
from pushrelay.services.telemetry import external_call_summary
from pushrelay.services.token_store import TokenStore


def _channel(**overrides) -> Channel:
    fields = {
        "type": CHANNEL_TYPE_CORP_APP,
        "user_id": 1,
        "name": "work",
        "secret": "agent-secret",
        "app_id": "corp1|1000002",
        "account_id": "@all",
        "other": "plugin",
        "status": 1,
    }
    fields.update(overrides)
    return Channel(**fields)


def _message(**overrides) -> Message:
    fields = {
        "title": "",
        "description": "",
        "content": "",
        "url": "",
        "btntxt": "",
        "to": "",
        "articles": [],
    }
    fields.update(overrides)
    return Message(**fields)


class CorpApi:
    # Scripted stand-in for the gettoken and message/send endpoints.
    def __init__(self, send_codes: list[int] | None = None) -> None:
        self.send_codes = list(send_codes or [0])
        self.token_calls = 0
        self.sent: list[tuple[str, dict]] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/cgi-bin/gettoken"):
            self.token_calls += 1
            return httpx.Response(200, json={"errcode": 0, "access_token": f"tok-{self.token_calls}"})
        self.sent.append((request.url.params["access_token"], json.loads(request.content)))
        code = self.send_codes.pop(0) if self.send_codes else 0
        return httpx.Response(200, json={"errcode": code, "errmsg": "ok" if code == 0 else "rejected"})


def test_plugin_dialect_follows_populated_fields() -> None:
    mpnews = [{"title": "t", "content": "<p>x</p>", "thumb_media_id": "m1"}]
    news = [{"title": "t", "url": "https://example.com"}]
    assert select_dialect(_message(articles=mpnews), "plugin") == "mpnews"
    assert select_dialect(_message(articles=news), "plugin") == "news"
    assert select_dialect(_message(title="Hi", content="body"), "plugin") == "textcard"
    assert select_dialect(_message(content="body"), "plugin") == "text"
    assert select_dialect(_message(), "plugin") is None


def test_non_plugin_clients_only_receive_markdown() -> None:
    assert select_dialect(_message(title="Hi", content="**body**"), "") == "markdown"
    assert select_dialect(_message(title="Hi"), None) is None


def test_payload_recipient_prefers_message_override() -> None:
    channel = _channel(other="")
    default = build_corp_app_payload(_message(content="x"), channel, agent_id="1000002")
    override = build_corp_app_payload(_message(content="x", to="bob"), channel, agent_id="1000002")
    assert default["touser"] == "@all"
    assert override["touser"] == "bob"
    assert override["markdown"] == {"content": "x"}
    assert override["agentid"] == "1000002"


@pytest.mark.asyncio
async def test_malformed_app_id_is_a_config_error() -> None:
    api = CorpApi()
    async with httpx.AsyncClient(transport=httpx.MockTransport(api)) as client:
        sender = CorpAppSender(client=client, token_store=TokenStore(failure_policy="stale"))
        with pytest.raises(ChannelConfigError):
            await sender.send(_message(content="x"), User(id=1, username="u"), _channel(app_id="corp1"))
    assert api.token_calls == 0
    assert api.sent == []


@pytest.mark.asyncio
async def test_send_makes_one_call_with_cached_token() -> None:
    api = CorpApi(send_codes=[0, 0])
    store = TokenStore(failure_policy="stale")
    async with httpx.AsyncClient(transport=httpx.MockTransport(api)) as client:
        sender = CorpAppSender(client=client, token_store=store)
        user = User(id=1, username="u")
        await sender.send(_message(title="Hi", description="d"), user, _channel())
        await sender.send(_message(content="second"), user, _channel())

    assert api.token_calls == 1
    assert [token for token, _ in api.sent] == ["tok-1", "tok-1"]
    assert api.sent[0][1]["msgtype"] == "textcard"
    assert api.sent[1][1]["msgtype"] == "text"
    assert corp_app_token_key("corp1", "1000002", "agent-secret") in store


@pytest.mark.asyncio
async def test_non_zero_errcode_raises_send_error() -> None:
    api = CorpApi(send_codes=[60020])
    async with httpx.AsyncClient(transport=httpx.MockTransport(api)) as client:
        sender = CorpAppSender(client=client, token_store=TokenStore(failure_policy="stale"))
        with pytest.raises(ChannelSendError, match="60020"):
            await sender.send(_message(content="x"), User(id=1, username="u"), _channel())
    assert len(api.sent) == 1


@pytest.mark.asyncio
async def test_expired_token_is_recovered_and_retried_once(make_user, make_channel) -> None:
    user = await make_user()
    channel = await make_channel(
        user,
        name="work",
        channel_type=CHANNEL_TYPE_CORP_APP,
        secret="agent-secret",
        app_id="corp1|1000002",
        account_id="@all",
        other="plugin",
    )
    api = CorpApi(send_codes=[42001, 0])
    async with httpx.AsyncClient(transport=httpx.MockTransport(api)) as client:
        sender = CorpAppSender(client=client, token_store=TokenStore(failure_policy="stale"))
        await sender.send(_message(content="x"), user, channel)

    assert api.token_calls == 2
    assert [token for token, _ in api.sent] == ["tok-1", "tok-2"]


@pytest.mark.asyncio
async def test_nothing_to_send_makes_no_call() -> None:
    api = CorpApi()
    async with httpx.AsyncClient(transport=httpx.MockTransport(api)) as client:
        sender = CorpAppSender(client=client, token_store=TokenStore(failure_policy="stale"))
        with pytest.raises(ChannelSendError):
            await sender.send(_message(title="only a title"), User(id=1, username="u"), _channel(other=""))
    assert api.sent == []
    assert api.token_calls == 0


@pytest.mark.asyncio
async def test_channels_with_same_credential_share_one_refresh(make_user, make_channel) -> None:
    user = await make_user()
    credential = {"secret": "S", "app_id": "X|Y", "account_id": "@all", "other": "plugin"}
    channel_a = await make_channel(user, name="A", channel_type=CHANNEL_TYPE_CORP_APP, **credential)
    channel_b = await make_channel(user, name="B", channel_type=CHANNEL_TYPE_CORP_APP, **credential)
    api = CorpApi(send_codes=[0, 0])
    store = TokenStore(failure_policy="stale")

    async with httpx.AsyncClient(transport=httpx.MockTransport(api)) as client:
        sender = CorpAppSender(client=client, token_store=store)
        await sender.send(_message(content="via A"), user, channel_a)
        await sender.send(_message(content="via B"), user, channel_b)

    assert api.token_calls == 1
    assert [token for token, _ in api.sent] == ["tok-1", "tok-1"]
    assert len(store) == 1
    assert await store.peek(corp_app_token_key("X", "Y", "S")).is_shared() is True


@pytest.mark.asyncio
async def test_non_json_send_response_is_recorded_as_a_failed_call() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/cgi-bin/gettoken"):
            return httpx.Response(200, json={"errcode": 0, "access_token": "tok"})
        return httpx.Response(200, text="<html>gateway page</html>")

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        sender = CorpAppSender(client=client, token_store=TokenStore(failure_policy="stale"))
        with pytest.raises(ChannelSendError, match="non-JSON"):
            await sender.send(_message(content="x"), User(id=1, username="u"), _channel())

    summary = external_call_summary()["corp_app"]
    assert summary["calls"] == 1.0
    assert summary["failures"] == 1.0
