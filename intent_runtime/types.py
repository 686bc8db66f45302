"""
Pydantic models for the Intent runtime SDK.

Covers client configuration, gateway handshake payloads and the domain
objects returned by the REST API and carried by gateway dispatches.
Wire fields are already snake_case, so most models map one-to-one.
"""

from __future__ import annotations

import enum
import os
from datetime import datetime
from typing import TYPE_CHECKING, Any

from pydantic import AliasChoices, BaseModel, Field, PrivateAttr

from intent_runtime.constants import (
    DEFAULT_GATEWAY_URL,
    DEFAULT_MAX_RETRIES,
    DEFAULT_REQUEST_TIMEOUT,
    DEFAULT_REST_URL,
)
from intent_runtime.errors import IntentError

if TYPE_CHECKING:
    from intent_runtime.rest import RESTClient


# ============================================================
#  Configuration
# ============================================================


class ReconnectConfig(BaseModel):
    """Gateway reconnection settings."""

    initial_delay_ms: int = 1000
    max_delay_ms: int = 30000
    jitter: float = Field(0.25, ge=0, lt=1)
    # None retries forever
    max_retries: int | None = None


class ClientConfig(BaseModel):
    """Configuration for connecting to Intent."""

    token: str
    gateway_url: str = DEFAULT_GATEWAY_URL
    rest_url: str = DEFAULT_REST_URL
    max_retries: int = Field(DEFAULT_MAX_RETRIES, ge=0)
    request_timeout: float = Field(DEFAULT_REQUEST_TIMEOUT, gt=0)
    reconnect: ReconnectConfig = Field(default_factory=ReconnectConfig)

    @classmethod
    def from_env(cls, **overrides: Any) -> ClientConfig:
        """Build a config from ``INTENT_*`` environment variables.

        Keyword arguments take precedence over the environment.
        """
        env: dict[str, Any] = {}
        for key, var in (
            ("token", "INTENT_TOKEN"),
            ("gateway_url", "INTENT_GATEWAY_URL"),
            ("rest_url", "INTENT_REST_URL"),
            ("max_retries", "INTENT_MAX_RETRIES"),
            ("request_timeout", "INTENT_REQUEST_TIMEOUT"),
        ):
            value = os.environ.get(var)
            if value:
                env[key] = value
        env.update(overrides)
        if "token" not in env:
            raise IntentError("INTENT_TOKEN is not set")
        return cls(**env)


# ============================================================
#  Gateway
# ============================================================


class ConnectionState(str, enum.Enum):
    """Gateway connection state machine values."""

    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    RECONNECTING = "RECONNECTING"


class Opcode(enum.IntEnum):
    """Gateway opcodes."""

    DISPATCH = 0
    HEARTBEAT = 1
    IDENTIFY = 2
    READY = 3
    HEARTBEAT_ACK = 11


class HeartbeatState(BaseModel):
    """Heartbeat bookkeeping for one connected socket."""

    interval_ms: int
    awaiting_ack: bool = False
    missed: int = 0


class IdentifyProperties(BaseModel):
    """Client metadata sent with Identify."""

    os: str
    client_name: str = Field(alias="browser")
    device: str = "bot"

    model_config = {"populate_by_name": True}


class IdentifyData(BaseModel):
    """Payload of an Identify (op 2) frame."""

    token: str
    properties: IdentifyProperties


# ============================================================
#  Domain objects
# ============================================================


class _Bound(BaseModel):
    """Base for models that can call back into the REST client."""

    _rest: Any = PrivateAttr(default=None)

    def bind(self, rest: RESTClient) -> _Bound:
        self._rest = rest
        return self

    def _require_rest(self) -> RESTClient:
        if self._rest is None:
            raise IntentError(f"{type(self).__name__} is not bound to a client")
        return self._rest


class User(_Bound):
    """A platform user (bots included)."""

    id: str
    username: str
    display_name: str
    avatar_url: str | None = None
    created_at: datetime | None = None


class Server(_Bound):
    """A server (guild) the bot belongs to."""

    id: str
    name: str
    owner_id: str
    icon_url: str | None = None
    description: str | None = None
    member_count: int = 0
    created_at: datetime | None = None

    async def fetch_channels(self) -> list[Channel]:
        """List this server's channels."""
        return await self._require_rest().list_channels(self.id)


class Channel(_Bound):
    """A channel inside a server."""

    id: str
    server_id: str
    name: str
    type: int
    topic: str | None = None
    position: int = 0
    parent_id: str | None = None
    created_at: datetime | None = None

    async def send(self, content: str) -> Message:
        """Post a message to this channel."""
        return await self._require_rest().create_message(self.id, content=content)


class Message(_Bound):
    """A chat message."""

    id: str
    channel_id: str
    author: User
    content: str
    created_at: datetime
    edited_at: datetime | None = None
    attachments: list[Any] = []
    embeds: list[Any] = []

    def bind(self, rest: RESTClient) -> Message:
        super().bind(rest)
        self.author.bind(rest)
        return self

    async def reply(self, content: str) -> Message:
        """Post ``content`` to the same channel.

        There is no reply threading yet, so this is a plain send.
        """
        return await self._require_rest().create_message(self.channel_id, content=content)

    async def edit(self, content: str) -> Message:
        return await self._require_rest().update_message(self.channel_id, self.id, content=content)

    async def delete(self) -> None:
        await self._require_rest().delete_message(self.channel_id, self.id)


class Role(_Bound):
    """A server role."""

    id: str
    server_id: str
    name: str
    permissions: int = 0
    position: int = 0
    color: int = 0
    hoist: bool = False
    mentionable: bool = False
    created_at: datetime | None = None


class Member(_Bound):
    """A user's membership in a server."""

    user: User
    server_id: str
    nickname: str | None = None
    roles: list[str] = []
    joined_at: datetime | None = None

    @property
    def display_name(self) -> str:
        """Nickname if set, otherwise the username."""
        return self.nickname or self.user.username


class ReadyData(BaseModel):
    """Payload of a Ready (op 3) frame."""

    user: User
    servers: list[Server] = []
    heartbeat_interval_ms: int = Field(
        validation_alias=AliasChoices("heartbeat_interval_ms", "heartbeat_interval"),
        gt=0,
    )


class ReadyEvent(BaseModel):
    """Emitted by :class:`~intent_runtime.client.IntentClient` once connected."""

    user: User
    servers: list[Server]


class MessageDeletePayload(BaseModel):
    """Emitted when a message is deleted."""

    id: str
    channel_id: str
