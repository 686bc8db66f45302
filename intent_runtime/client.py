"""
Intent runtime SDK: the bot-facing client.

Owns a :class:`~intent_runtime.rest.RESTClient` and a
:class:`~intent_runtime.gateway.GatewayConnection`. Raw dispatch events
from the gateway are mapped to typed models and re-emitted under
snake_case names.

Usage::

    from intent_runtime import IntentClient

    client = IntentClient(token="bot_xxx")

    async def on_message(msg):
        if msg.content == "!ping":
            await msg.reply("pong")

    client.on("message_create", on_message)
    await client.listen()
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable

import pydantic

from intent_runtime.errors import IntentError, ProtocolError
from intent_runtime.events import EventHandler, EventManager
from intent_runtime.gateway import Connector, GatewayConnection
from intent_runtime.rest import RESTClient
from intent_runtime.types import (
    Channel,
    ClientConfig,
    ConnectionState,
    Message,
    MessageDeletePayload,
    ReadyData,
    ReadyEvent,
    Server,
)

logger = logging.getLogger(__name__)

# Wire event name -> client event name
_DISPATCH_EVENTS: dict[str, str] = {
    "MESSAGE_CREATE": "message_create",
    "MESSAGE_UPDATE": "message_update",
    "MESSAGE_DELETE": "message_delete",
    "SERVER_CREATE": "server_create",
    "CHANNEL_CREATE": "channel_create",
}


class IntentClient:
    """
    The main Intent client for bot code.

    Events: ``ready`` (:class:`ReadyEvent`), ``message_create`` and
    ``message_update`` (:class:`Message`), ``message_delete``
    (:class:`MessageDeletePayload`), ``server_create`` (:class:`Server`),
    ``channel_create`` (:class:`Channel`), ``disconnect`` (close code) and
    ``error`` (exception).
    """

    def __init__(
        self,
        token: str | None = None,
        config: ClientConfig | None = None,
        connector: Connector | None = None,
    ) -> None:
        if config is None:
            if token is None:
                raise IntentError("Either token or config is required")
            config = ClientConfig(token=token)
        self.config = config

        self._rest = RESTClient(
            token=config.token,
            base_url=config.rest_url,
            max_retries=config.max_retries,
            timeout=config.request_timeout,
        )
        self._gateway = GatewayConnection(
            token=config.token,
            url=config.gateway_url,
            reconnect=config.reconnect,
            connector=connector,
        )
        self._events = EventManager()
        self._closed = asyncio.Event()
        self._wire()

    @property
    def rest(self) -> RESTClient:
        """REST client, also used by model helpers such as ``Message.reply``."""
        return self._rest

    @property
    def state(self) -> ConnectionState:
        return self._gateway.state

    # ---- lifecycle ----

    def login(self) -> None:
        """Connect to the gateway and begin receiving events."""
        self._closed.clear()
        self._gateway.connect()

    async def destroy(self) -> None:
        """Disconnect from the gateway.

        The REST client stays usable, and :meth:`login` may be called
        again. Use :meth:`close` to release the HTTP connection pool.
        """
        await self._gateway.disconnect()
        await self._events.stop()
        self._closed.set()

    async def close(self) -> None:
        """Destroy the client and close the REST client for good."""
        await self.destroy()
        await self._rest.close()

    async def listen(self) -> None:
        """Log in and block until :meth:`destroy` is called or the task is cancelled."""
        self.login()
        logger.info("Listening for events... (press Ctrl+C to stop)")
        try:
            await self._closed.wait()
        except (asyncio.CancelledError, KeyboardInterrupt):
            pass
        finally:
            if not self._closed.is_set():
                await self.destroy()

    # ---- event shortcuts ----

    def on(self, event_type: str, handler: EventHandler) -> None:
        """Subscribe to a client event."""
        self._events.subscribe(event_type, handler)

    def off(self, event_type: str, handler: EventHandler | None = None) -> None:
        """Unsubscribe from a client event."""
        self._events.unsubscribe(event_type, handler)

    def event(self, event_type: str) -> Callable[[EventHandler], EventHandler]:
        """Decorator form of :meth:`on`."""

        def decorator(handler: EventHandler) -> EventHandler:
            self.on(event_type, handler)
            return handler

        return decorator

    # ---- gateway wiring ----

    def _wire(self) -> None:
        self._gateway.on("READY", self._on_ready)
        for wire_name, event_name in _DISPATCH_EVENTS.items():
            self._gateway.on(wire_name, self._mapper(wire_name, event_name))
        self._gateway.on("disconnect", lambda code: self._events.emit("disconnect", code))
        self._gateway.on("error", lambda err: self._events.emit("error", err))

    def _on_ready(self, raw: Any) -> None:
        try:
            data = ReadyData.model_validate(raw)
        except pydantic.ValidationError as e:
            self._events.emit("error", ProtocolError(f"Malformed READY payload: {e}"))
            return
        self._events.emit(
            "ready",
            ReadyEvent(
                user=data.user.bind(self._rest),
                servers=[s.bind(self._rest) for s in data.servers],
            ),
        )

    def _mapper(self, wire_name: str, event_name: str) -> Callable[[Any], None]:
        def handle(raw: Any) -> None:
            try:
                payload = self._build(wire_name, raw)
            except (pydantic.ValidationError, TypeError) as e:
                self._events.emit("error", ProtocolError(f"Malformed {wire_name} payload: {e}"))
                return
            self._events.emit(event_name, payload)

        return handle

    def _build(self, wire_name: str, raw: Any) -> Any:
        if wire_name in ("MESSAGE_CREATE", "MESSAGE_UPDATE"):
            return Message.model_validate(raw).bind(self._rest)
        if wire_name == "MESSAGE_DELETE":
            return MessageDeletePayload.model_validate(raw)
        if wire_name == "SERVER_CREATE":
            return Server.model_validate(raw).bind(self._rest)
        if wire_name == "CHANNEL_CREATE":
            return Channel.model_validate(raw).bind(self._rest)
        raise TypeError(f"No mapping for {wire_name}")
