"""
Unit tests for the Intent bot client.

The gateway side runs against FakeSocket; REST calls made from event
handlers are mocked with respx, so no actual Intent service is required.
"""

from __future__ import annotations

import asyncio

import httpx
import pytest
import respx

from conftest import FakeConnector, message_data, ready_frame, wait_for
from intent_runtime import IntentClient
from intent_runtime.errors import IntentError, ProtocolError
from intent_runtime.types import (
    ClientConfig,
    ConnectionState,
    Member,
    Message,
    MessageDeletePayload,
    ReadyData,
    ReadyEvent,
    ReconnectConfig,
    Server,
    User,
)


GATEWAY_URL = "ws://gateway.test"
API_URL = "http://api.test/v1"
TOKEN = "bot_test_token"


def make_client(connector: FakeConnector) -> IntentClient:
    config = ClientConfig(
        token=TOKEN,
        gateway_url=GATEWAY_URL,
        rest_url=API_URL,
        reconnect=ReconnectConfig(initial_delay_ms=10_000),
    )
    return IntentClient(config=config, connector=connector)


async def login_ready(client: IntentClient, connector: FakeConnector) -> None:
    opened = len(connector.sockets)
    client.login()
    await wait_for(lambda: len(connector.sockets) > opened and bool(connector.latest.sent))
    connector.latest.feed(ready_frame())
    await wait_for(lambda: client.state is ConnectionState.CONNECTED)


def dispatch(event: str, data: dict, seq: int = 1) -> dict:
    return {"op": 0, "t": event, "s": seq, "d": data}


# ============================================================
#  Construction
# ============================================================


def test_client_requires_token_or_config() -> None:
    with pytest.raises(IntentError, match="token or config"):
        IntentClient()


@pytest.mark.asyncio
async def test_client_from_token_uses_defaults() -> None:
    client = IntentClient(token=TOKEN)
    assert client.config.token == TOKEN
    assert client.config.max_retries == 3
    assert client.state is ConnectionState.DISCONNECTED
    await client.rest.close()


# ============================================================
#  Events
# ============================================================


@pytest.mark.asyncio
async def test_ready_event(connector: FakeConnector) -> None:
    """READY is re-emitted as a typed ReadyEvent."""
    client = make_client(connector)
    received: list[ReadyEvent] = []
    client.on("ready", received.append)

    await login_ready(client, connector)

    assert len(received) == 1
    assert received[0].user.username == "testbot"
    assert received[0].servers[0].id == "200"
    await client.destroy()


@pytest.mark.asyncio
async def test_message_create_and_reply(connector: FakeConnector) -> None:
    """A handler can reply to a dispatched message through the REST client."""
    with respx.mock(base_url=API_URL) as mock:
        post = mock.post("/channels/400/messages").mock(
            return_value=httpx.Response(200, json=message_data(id="301", content="pong"))
        )
        client = make_client(connector)
        replies: list[Message] = []

        @client.event("message_create")
        async def on_message(msg: Message) -> None:
            if msg.content == "!ping":
                replies.append(await msg.reply("pong"))

        await login_ready(client, connector)
        connector.latest.feed(dispatch("MESSAGE_CREATE", message_data(content="!ping")))
        await wait_for(lambda: bool(replies))

        assert post.called
        assert post.calls.last.request.headers["authorization"] == f"Bearer {TOKEN}"
        assert replies[0].content == "pong"
        await client.destroy()


@pytest.mark.asyncio
async def test_message_delete_event(connector: FakeConnector) -> None:
    client = make_client(connector)
    deleted: list[MessageDeletePayload] = []
    client.on("message_delete", deleted.append)

    await login_ready(client, connector)
    connector.latest.feed(dispatch("MESSAGE_DELETE", {"id": "300", "channel_id": "400"}))
    await wait_for(lambda: bool(deleted))

    assert deleted[0].id == "300"
    assert deleted[0].channel_id == "400"
    await client.destroy()


@pytest.mark.asyncio
async def test_server_and_channel_create_events(connector: FakeConnector) -> None:
    client = make_client(connector)
    seen: list[tuple[str, str]] = []
    client.on("server_create", lambda s: seen.append(("server", s.name)))
    client.on("channel_create", lambda c: seen.append(("channel", c.name)))

    await login_ready(client, connector)
    connector.latest.feed(dispatch("SERVER_CREATE", {"id": "201", "name": "New", "owner_id": "1"}))
    connector.latest.feed(
        dispatch("CHANNEL_CREATE", {"id": "401", "server_id": "201", "name": "lobby", "type": 0}, seq=2)
    )
    await wait_for(lambda: len(seen) == 2)

    assert seen == [("server", "New"), ("channel", "lobby")]
    await client.destroy()


@pytest.mark.asyncio
async def test_malformed_dispatch_emits_error(connector: FakeConnector) -> None:
    client = make_client(connector)
    errors: list[Exception] = []
    messages: list[Message] = []
    client.on("error", errors.append)
    client.on("message_create", messages.append)

    await login_ready(client, connector)
    connector.latest.feed(dispatch("MESSAGE_CREATE", {"id": "300"}))
    await wait_for(lambda: bool(errors))

    assert isinstance(errors[0], ProtocolError)
    assert "MESSAGE_CREATE" in str(errors[0])
    assert messages == []
    assert client.state is ConnectionState.CONNECTED
    await client.destroy()


@pytest.mark.asyncio
async def test_disconnect_is_forwarded(connector: FakeConnector) -> None:
    client = make_client(connector)
    codes: list[int] = []
    client.on("disconnect", codes.append)

    await login_ready(client, connector)
    connector.latest.drop(1006)
    await wait_for(lambda: bool(codes))

    assert codes == [1006]
    assert client.state is ConnectionState.RECONNECTING
    await client.destroy()


@pytest.mark.asyncio
async def test_off_removes_handler(connector: FakeConnector) -> None:
    client = make_client(connector)
    received: list[ReadyEvent] = []

    def on_ready(event: ReadyEvent) -> None:
        received.append(event)

    client.on("ready", on_ready)
    client.off("ready", on_ready)

    await login_ready(client, connector)
    assert received == []
    await client.destroy()


# ============================================================
#  Lifecycle
# ============================================================


@pytest.mark.asyncio
async def test_destroy_closes_cleanly(connector: FakeConnector) -> None:
    client = make_client(connector)
    codes: list[int] = []
    client.on("disconnect", codes.append)

    await login_ready(client, connector)
    await client.destroy()

    assert client.state is ConnectionState.DISCONNECTED
    assert connector.latest.close_code == 1000
    assert codes == []


@pytest.mark.asyncio
async def test_listen_returns_after_destroy(connector: FakeConnector) -> None:
    client = make_client(connector)
    listener = asyncio.create_task(client.listen())

    await wait_for(lambda: bool(connector.sockets))
    await client.destroy()

    await asyncio.wait_for(listener, timeout=1)
    assert client.state is ConnectionState.DISCONNECTED


@pytest.mark.asyncio
async def test_login_after_destroy_keeps_rest_usable(connector: FakeConnector) -> None:
    """destroy() only stops the gateway; a second login can still call REST."""
    with respx.mock(base_url=API_URL) as mock:
        mock.get("/servers").mock(return_value=httpx.Response(200, json=[]))
        client = make_client(connector)

        await login_ready(client, connector)
        await client.destroy()
        await login_ready(client, connector)

        assert await client.rest.list_servers() == []
        assert len(connector.sockets) == 2
        await client.close()


@pytest.mark.asyncio
async def test_close_shuts_rest_client(connector: FakeConnector) -> None:
    client = make_client(connector)
    await login_ready(client, connector)
    await client.close()

    assert client.state is ConnectionState.DISCONNECTED
    with pytest.raises(IntentError, match="closed"):
        await client.rest.list_servers()


# ============================================================
#  Types
# ============================================================


def test_ready_data_accepts_legacy_interval_key() -> None:
    """Ready parses both heartbeat_interval_ms and heartbeat_interval."""
    frame = ready_frame()["d"]
    frame["heartbeat_interval"] = frame.pop("heartbeat_interval_ms")

    data = ReadyData.model_validate(frame)
    assert data.heartbeat_interval_ms == 5000
    assert data.user.display_name == "Test Bot"


def test_member_display_name_prefers_nickname() -> None:
    user = User(id="1", username="alice", display_name="Alice")
    assert Member(user=user, server_id="200", nickname="Al").display_name == "Al"
    assert Member(user=user, server_id="200").display_name == "alice"


def test_config_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("INTENT_TOKEN", "env_token")
    monkeypatch.setenv("INTENT_REST_URL", "http://env.test/v1")
    monkeypatch.setenv("INTENT_MAX_RETRIES", "5")

    config = ClientConfig.from_env(max_retries=1)

    assert config.token == "env_token"
    assert config.rest_url == "http://env.test/v1"
    assert config.max_retries == 1


def test_config_from_env_requires_token(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("INTENT_TOKEN", raising=False)
    with pytest.raises(IntentError, match="INTENT_TOKEN"):
        ClientConfig.from_env()


@pytest.mark.asyncio
async def test_unbound_model_cannot_call_rest() -> None:
    message = Message.model_validate(message_data())
    with pytest.raises(IntentError, match="not bound"):
        await message.reply("hi")


@pytest.mark.asyncio
async def test_server_fetch_channels() -> None:
    with respx.mock(base_url=API_URL) as mock:
        mock.get("/servers/200/channels").mock(
            return_value=httpx.Response(
                200, json=[{"id": "400", "server_id": "200", "name": "chat", "type": 0}]
            )
        )
        client = IntentClient(config=ClientConfig(token=TOKEN, rest_url=API_URL))
        server = Server(id="200", name="General", owner_id="1").bind(client.rest)

        channels = await server.fetch_channels()

        assert [c.name for c in channels] == ["chat"]
        await client.rest.close()
