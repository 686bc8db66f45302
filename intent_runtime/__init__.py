"""
Intent Runtime SDK for Python.

Async bot client for the Intent chat platform: a persistent gateway
connection for real-time events plus a rate-limited REST client.

Example::

    from intent_runtime import IntentClient

    client = IntentClient(token="bot_your_token_here")

    @client.event("ready")
    def on_ready(event):
        print(f"Logged in as {event.user.username}")

    @client.event("message_create")
    async def on_message(msg):
        if msg.content == "!ping":
            await msg.reply("pong")

    await client.listen()
"""

from intent_runtime.client import IntentClient
from intent_runtime.bucket import Bucket, BucketRegistry
from intent_runtime.constants import VERSION
from intent_runtime.errors import (
    IntentError,
    IntentConnectionError,
    ProtocolError,
    HeartbeatTimeout,
    ValidationError,
    RequestTimeoutError,
    HTTPError,
    RateLimitExceeded,
    Unauthorized,
    Forbidden,
    NotFound,
    ServerError,
    UnknownHTTPError,
)
from intent_runtime.gateway import GatewayConnection
from intent_runtime.rest import RESTClient
from intent_runtime.route import Route
from intent_runtime.types import (
    ClientConfig,
    ReconnectConfig,
    ConnectionState,
    User,
    Server,
    Channel,
    Message,
    Member,
    Role,
    ReadyEvent,
    MessageDeletePayload,
)

__all__ = [
    "IntentClient",
    "RESTClient",
    "GatewayConnection",
    "Bucket",
    "BucketRegistry",
    "Route",
    "ClientConfig",
    "ReconnectConfig",
    "ConnectionState",
    "User",
    "Server",
    "Channel",
    "Message",
    "Member",
    "Role",
    "ReadyEvent",
    "MessageDeletePayload",
    "IntentError",
    "IntentConnectionError",
    "ProtocolError",
    "HeartbeatTimeout",
    "ValidationError",
    "RequestTimeoutError",
    "HTTPError",
    "RateLimitExceeded",
    "Unauthorized",
    "Forbidden",
    "NotFound",
    "ServerError",
    "UnknownHTTPError",
]

__version__ = VERSION
