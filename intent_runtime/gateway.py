"""
Gateway connection manager.

Owns one websocket to the Intent gateway and drives its lifecycle::

    DISCONNECTED --connect()--> CONNECTING --Ready--> CONNECTED
    CONNECTED --unexpected close--> RECONNECTING --backoff--> CONNECTING

On open the connection sends Identify; the server answers with Ready,
which carries the heartbeat interval. Heartbeats go out immediately and
then once per interval. Three unacknowledged beats in a row mean the
socket is dead: it is closed with code 4000 and a reconnect is scheduled
with jittered exponential backoff.

Every reconnect re-identifies from scratch. The sequence cursor rides
along in heartbeats but is not used to resume.

Notifications, all delivered through :meth:`GatewayConnection.on`:

- ``READY`` and every dispatch event name, with the raw payload;
- ``disconnect`` with the close code, after an unexpected close;
- ``error`` with an :class:`~intent_runtime.errors.IntentError`.
"""

from __future__ import annotations

import asyncio
import logging
import random
import sys
from typing import Any, Awaitable, Callable

import pydantic
import websockets

from intent_runtime.constants import (
    ABNORMAL_CLOSE_CODE,
    CLIENT_CLOSE_CODE,
    DEFAULT_GATEWAY_URL,
    HEARTBEAT_TIMEOUT_CLOSE_CODE,
    MAX_MISSED_HEARTBEATS,
)
from intent_runtime.encoding import decode, encode
from intent_runtime.errors import HeartbeatTimeout, IntentConnectionError, ProtocolError
from intent_runtime.events import EventHandler, EventManager
from intent_runtime.types import (
    ConnectionState,
    HeartbeatState,
    IdentifyData,
    IdentifyProperties,
    Opcode,
    ReadyData,
    ReconnectConfig,
)

logger = logging.getLogger(__name__)

Connector = Callable[[str], Awaitable[Any]]


async def _open_websocket(url: str) -> Any:
    return await websockets.connect(url)


def reconnect_delay(
    attempts: int,
    config: ReconnectConfig | None = None,
    rng: random.Random | None = None,
) -> float:
    """Backoff before reconnect number ``attempts`` (0-indexed), in seconds.

    ``clamp(initial * 2**attempts, initial, max)`` scaled by a uniform
    jitter factor in ``[1 - jitter, 1 + jitter]``.
    """
    config = config or ReconnectConfig()
    base = min(config.initial_delay_ms * 2 ** attempts, config.max_delay_ms)
    base = max(base, config.initial_delay_ms)
    factor = (rng or random).uniform(1 - config.jitter, 1 + config.jitter)
    return base * factor / 1000


class GatewayConnection:
    """Single websocket connection to the gateway."""

    def __init__(
        self,
        token: str,
        url: str = DEFAULT_GATEWAY_URL,
        reconnect: ReconnectConfig | None = None,
        connector: Connector | None = None,
        client_name: str = "intent-runtime",
    ) -> None:
        self._token = token
        self._url = url
        self._reconnect_config = reconnect or ReconnectConfig()
        self._connector = connector or _open_websocket
        self._client_name = client_name
        self._events = EventManager()
        self._rng = random.Random()

        self._state = ConnectionState.DISCONNECTED
        self._ws: Any | None = None
        self._conn_task: asyncio.Task[None] | None = None

        # heartbeat
        self._heartbeat: HeartbeatState | None = None
        self._heartbeat_task: asyncio.Task[None] | None = None
        self._forced_close_code: int | None = None

        # reconnection
        self._reconnect_task: asyncio.Task[None] | None = None
        self._attempts = 0
        self._intentional_close = False

        self._seq: int | None = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def sequence(self) -> int | None:
        """Last sequence number seen on this socket."""
        return self._seq

    @property
    def attempts(self) -> int:
        """Reconnects scheduled since the last Ready."""
        return self._attempts

    @property
    def heartbeat(self) -> HeartbeatState | None:
        return self._heartbeat

    def on(self, event_type: str, handler: EventHandler) -> None:
        self._events.subscribe(event_type, handler)

    def off(self, event_type: str, handler: EventHandler | None = None) -> None:
        self._events.unsubscribe(event_type, handler)

    # ---- control ----

    def connect(self) -> None:
        """Start connecting. Must be called with a running event loop.

        Failures are reported through ``error``/``disconnect``
        notifications, never raised from here.
        """
        if self._state in (ConnectionState.CONNECTED, ConnectionState.CONNECTING):
            return
        # The reconnect timer calls this from RECONNECTING and must not
        # override a disconnect() that happened while it was pending.
        if self._state is ConnectionState.DISCONNECTED:
            self._intentional_close = False
        self._state = ConnectionState.CONNECTING
        self._conn_task = asyncio.create_task(self._run())

    async def disconnect(self) -> None:
        """Close the connection and cancel every pending timer."""
        self._intentional_close = True
        self._stop_heartbeat()
        self._cancel_reconnect()
        self._state = ConnectionState.DISCONNECTED
        self._seq = None

        ws, self._ws = self._ws, None
        task, self._conn_task = self._conn_task, None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
        if ws is not None:
            await ws.close(CLIENT_CLOSE_CODE, "Client disconnect")
        if task is not None and task is not asyncio.current_task():
            await asyncio.gather(task, return_exceptions=True)
        logger.info("Disconnected from Intent gateway")

    # ---- socket ----

    async def _run(self) -> None:
        task = asyncio.current_task()
        try:
            ws = await self._connector(self._url)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Gateway connection to %s failed: %s", self._url, e)
            self._events.emit("error", IntentConnectionError(f"Could not connect to {self._url}: {e}"))
            self._on_close(task, ABNORMAL_CLOSE_CODE)
            return

        if task is not self._conn_task or self._intentional_close:
            await ws.close(CLIENT_CLOSE_CODE, "Client disconnect")
            return

        self._ws = ws
        self._forced_close_code = None
        await self._identify()

        try:
            async for raw in ws:
                await self._on_message(raw)
        except websockets.ConnectionClosedOK:
            pass
        except websockets.ConnectionClosedError as e:
            if not self._intentional_close and self._forced_close_code is None:
                logger.warning("Gateway connection lost: %s", e)
                error = IntentConnectionError(f"Gateway connection lost: {e}")
                error.__cause__ = e
                self._events.emit("error", error)

        code = self._forced_close_code or getattr(ws, "close_code", None) or ABNORMAL_CLOSE_CODE
        self._on_close(task, code)

    async def _identify(self) -> None:
        identify = IdentifyData(
            token=self._token,
            properties=IdentifyProperties(os=sys.platform, client_name=self._client_name),
        )
        await self._send({"op": Opcode.IDENTIFY.value, "d": identify.model_dump(by_alias=True)})

    async def _on_message(self, raw: Any) -> None:
        if isinstance(raw, str):
            # The gateway only sends binary frames; text usually means a
            # misconfigured proxy or a leaked HTTP error page.
            logger.warning("Received unexpected text frame from gateway: %.200s", raw)
            return
        try:
            payload = decode(raw)
        except ProtocolError as e:
            self._events.emit("error", e)
            return

        seq = payload.get("s")
        if isinstance(seq, int) and (self._seq is None or seq > self._seq):
            self._seq = seq
        await self._route(payload)

    def _on_close(self, task: asyncio.Task[None] | None, code: int) -> None:
        if task is not self._conn_task:
            # a socket we already replaced or tore down
            return
        self._conn_task = None
        self._stop_heartbeat()
        self._ws = None
        self._seq = None

        if self._intentional_close:
            self._state = ConnectionState.DISCONNECTED
            return

        self._state = ConnectionState.RECONNECTING
        logger.warning("Gateway connection closed unexpectedly (code %d)", code)
        self._events.emit("disconnect", code)
        self._schedule_reconnect()

    # ---- opcode routing ----

    async def _route(self, payload: dict[str, Any]) -> None:
        op = payload["op"]
        if op == Opcode.READY:
            self._on_ready(payload.get("d"))
        elif op == Opcode.DISPATCH:
            event = payload.get("t")
            if event:
                self._events.emit(event, payload.get("d"))
        elif op == Opcode.HEARTBEAT_ACK:
            if self._heartbeat is not None:
                self._heartbeat.awaiting_ack = False
                self._heartbeat.missed = 0
        elif op == Opcode.HEARTBEAT:
            # server asked for a beat right now
            await self._beat()
        else:
            logger.debug("Ignoring gateway frame with op %s", op)

    def _on_ready(self, data: Any) -> None:
        try:
            ready = ReadyData.model_validate(data)
        except pydantic.ValidationError as e:
            self._events.emit("error", ProtocolError(f"Malformed Ready payload: {e}"))
            return

        self._state = ConnectionState.CONNECTED
        self._attempts = 0
        self._start_heartbeat(ready.heartbeat_interval_ms)
        logger.info(
            "Connected to Intent gateway as %s (%d servers)",
            ready.user.username,
            len(ready.servers),
        )
        self._events.emit("READY", data)

    # ---- heartbeat ----

    def _start_heartbeat(self, interval_ms: int) -> None:
        self._stop_heartbeat()
        self._heartbeat = HeartbeatState(interval_ms=interval_ms)
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(self._heartbeat))

    def _stop_heartbeat(self) -> None:
        task, self._heartbeat_task = self._heartbeat_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        self._heartbeat = None

    async def _heartbeat_loop(self, state: HeartbeatState) -> None:
        interval = state.interval_ms / 1000
        await self._beat()
        while True:
            await asyncio.sleep(interval)
            if state.awaiting_ack:
                state.missed += 1
                if state.missed >= MAX_MISSED_HEARTBEATS:
                    await self._heartbeat_timed_out(state.missed)
                    return
            await self._beat()

    async def _heartbeat_timed_out(self, missed: int) -> None:
        reason = HeartbeatTimeout(missed)
        logger.warning("%s, closing gateway connection", reason)
        self._heartbeat_task = None
        self._heartbeat = None
        ws = self._ws
        if ws is not None:
            self._forced_close_code = HEARTBEAT_TIMEOUT_CLOSE_CODE
            await ws.close(HEARTBEAT_TIMEOUT_CLOSE_CODE, str(reason))

    async def _beat(self) -> None:
        if self._heartbeat is not None:
            self._heartbeat.awaiting_ack = True
        logger.debug("Sending heartbeat (seq=%s)", self._seq)
        await self._send({"op": Opcode.HEARTBEAT.value, "d": self._seq})

    # ---- reconnection ----

    def _schedule_reconnect(self) -> None:
        self._cancel_reconnect()
        max_retries = self._reconnect_config.max_retries
        if max_retries is not None and self._attempts >= max_retries:
            logger.error("Giving up on gateway after %d reconnect attempts", self._attempts)
            self._state = ConnectionState.DISCONNECTED
            self._events.emit(
                "error",
                IntentConnectionError(f"Gave up reconnecting after {self._attempts} attempts"),
            )
            return

        delay = reconnect_delay(self._attempts, self._reconnect_config, self._rng)
        self._attempts += 1
        logger.warning("Reconnecting to gateway in %.2fs (attempt %d)", delay, self._attempts)
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay))

    async def _reconnect_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._reconnect_task = None
        if self._intentional_close or self._state is not ConnectionState.RECONNECTING:
            return
        self.connect()

    def _cancel_reconnect(self) -> None:
        task, self._reconnect_task = self._reconnect_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    # ---- helpers ----

    async def _send(self, payload: dict[str, Any]) -> None:
        ws = self._ws
        if ws is None:
            return
        try:
            await ws.send(encode(payload))
        except websockets.ConnectionClosed:
            logger.debug("Dropped op %s frame, socket already closed", payload["op"])
