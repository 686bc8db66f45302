"""
REST client for the Intent API.

Every call goes through :meth:`RESTClient.request`, which waits out any
global rate limit, takes a slot in the route's :class:`Bucket`, performs
the HTTP call with ``httpx``, feeds the rate-limit headers back into the
bucket and retries 429/5xx responses up to ``max_retries`` times.

Usage::

    rest = RESTClient(token="bot_xxx")
    server = await rest.get_server("1234")
    await rest.close()
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from typing import Any, Awaitable, Callable

import httpx

from intent_runtime.bucket import Bucket, BucketRegistry
from intent_runtime.constants import (
    DEFAULT_MAX_RETRIES,
    DEFAULT_REQUEST_TIMEOUT,
    DEFAULT_REST_URL,
    DEFAULT_RETRY_AFTER,
    USER_AGENT,
)
from intent_runtime.errors import (
    Forbidden,
    IntentConnectionError,
    IntentError,
    NotFound,
    ProtocolError,
    RateLimitExceeded,
    RequestTimeoutError,
    ServerError,
    Unauthorized,
    UnknownHTTPError,
    ValidationError,
)
from intent_runtime.route import Route
from intent_runtime.types import Channel, Message, Server

logger = logging.getLogger(__name__)

_SNOWFLAKE = re.compile(r"^\d+$")


def validate_snowflake(value: str | int, name: str) -> str:
    """Return ``value`` as a string if it is a numeric id.

    Raises:
        ValidationError: If ``value`` is empty or not all digits.
    """
    text = str(value) if isinstance(value, int) and not isinstance(value, bool) else value
    if not isinstance(text, str) or not _SNOWFLAKE.match(text):
        raise ValidationError(f"Invalid {name}: must be a numeric string")
    return text


class GlobalRateLimit:
    """Process-wide limit that pauses every bucket at once."""

    def __init__(self) -> None:
        self.limited = False
        self.reset_at_ms = 0.0

    def trip(self, reset_at_ms: float) -> None:
        # last write wins
        self.limited = True
        self.reset_at_ms = reset_at_ms
        logger.warning(
            "Global rate limit hit, pausing all requests for %.2fs",
            max(reset_at_ms - time.time() * 1000, 0) / 1000,
        )

    async def wait(self, sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep) -> None:
        """Suspend until the global limit has elapsed.

        A limit tripped again while sleeping is waited out as well; only
        the waiter that saw the current window end clears the flag.
        """
        while self.limited:
            reset_at_ms = self.reset_at_ms
            delay_ms = reset_at_ms - time.time() * 1000
            if delay_ms > 0:
                await sleep(delay_ms / 1000)
            if self.reset_at_ms == reset_at_ms:
                self.limited = False


class RESTClient:
    """Authenticated HTTP client with per-route rate limiting and retries."""

    def __init__(
        self,
        token: str | None = None,
        base_url: str = DEFAULT_REST_URL,
        max_retries: int = DEFAULT_MAX_RETRIES,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries
        self.timeout = timeout
        self._token = token
        self._client = httpx.AsyncClient(
            headers={"User-Agent": USER_AGENT},
            timeout=timeout,
            transport=transport,
        )
        self.buckets = BucketRegistry()
        self.global_limit = GlobalRateLimit()
        self._sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep

    def set_token(self, token: str) -> None:
        self._token = token

    @property
    def closed(self) -> bool:
        return self._client.is_closed

    # ---- request executor ----

    async def request(
        self,
        method: str,
        path: str,
        body: Any = None,
        query: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        """Make an authenticated request, honouring rate limits.

        Retries 429 responses after ``retry_after`` seconds and 5xx
        responses after ``2 ** attempt`` seconds, up to ``max_retries``
        times. Any other error is raised immediately.

        Returns:
            The decoded JSON body, or ``None`` for 204 responses.

        Raises:
            IntentError: If no token is set, or one of its subclasses for
                the terminal failure.
        """
        if not self._token:
            raise IntentError("No auth token set")
        if self.closed:
            raise IntentError("REST client is closed")

        route = Route.build(method, path)
        bucket = self.buckets.get(route.bucket_key)
        last_error: IntentError | None = None

        for attempt in range(self.max_retries + 1):
            await self.global_limit.wait(self._sleep)

            # Retries reuse the slot taken by the first attempt
            if attempt == 0:
                await bucket.acquire()

            response = await self._send(route, body, query, headers)
            self._apply_rate_limit_headers(bucket, response)

            try:
                return self._handle_response(route, response)
            except RateLimitExceeded as e:
                last_error = e
                if e.global_:
                    self.global_limit.trip(time.time() * 1000 + e.retry_after * 1000)
                if attempt == self.max_retries:
                    raise
                logger.warning(
                    "Rate limited (429) on %s, retrying in %.2fs (attempt %d/%d)",
                    route.bucket_key, e.retry_after, attempt + 1, self.max_retries,
                )
                await self._sleep(e.retry_after)
            except ServerError as e:
                last_error = e
                if attempt == self.max_retries:
                    raise
                delay = 2 ** attempt
                logger.warning(
                    "Server error (%d) on %s %s, retrying in %ds (attempt %d/%d)",
                    e.status, route.method, route.path, delay, attempt + 1, self.max_retries,
                )
                await self._sleep(delay)

        raise last_error or IntentError("Max retries exceeded")

    async def _send(
        self,
        route: Route,
        body: Any,
        query: dict[str, Any] | None,
        headers: dict[str, str] | None,
    ) -> httpx.Response:
        request_headers = {"Authorization": f"Bearer {self._token}"}
        if headers:
            request_headers.update(headers)
        params = {k: _query_value(v) for k, v in (query or {}).items() if v is not None}
        url = route.url(self.base_url)
        if self.closed:
            raise IntentError("REST client is closed")
        try:
            return await self._client.request(
                route.method,
                url,
                json=body,
                params=params or None,
                headers=request_headers,
            )
        except httpx.TimeoutException as e:
            raise RequestTimeoutError(route.method, url, self.timeout) from e
        except httpx.TransportError as e:
            raise IntentConnectionError(f"{route.method} {url} failed: {e}") from e

    def _apply_rate_limit_headers(self, bucket: Bucket, response: httpx.Response) -> None:
        bucket.update_from_headers(response.headers)
        if response.headers.get("x-ratelimit-global", "").lower() == "true":
            reset = response.headers.get("x-ratelimit-reset")
            try:
                reset_at_ms = float(reset) * 1000 if reset else time.time() * 1000 + 1000
            except ValueError:
                reset_at_ms = time.time() * 1000 + 1000
            self.global_limit.trip(reset_at_ms)

    def _handle_response(self, route: Route, response: httpx.Response) -> Any:
        if response.status_code == 204:
            return None

        is_json = "application/json" in response.headers.get("content-type", "")
        if is_json:
            try:
                data: Any = response.json()
            except ValueError:
                is_json = False
                data = response.text
        else:
            data = response.text

        if response.is_success:
            return data

        # Only the server's ``error`` field makes it into messages
        error_data = data if is_json and isinstance(data, dict) else {}
        message = error_data.get("error") or f"HTTP {response.status_code}"
        url = route.url(self.base_url)
        status = response.status_code

        if status == 429:
            retry_after = error_data.get("retry_after")
            if retry_after is None:
                retry_after = response.headers.get("retry-after")
            raise RateLimitExceeded(
                route.method,
                url,
                _parse_retry_after(retry_after),
                bool(error_data.get("global", False)),
                response.headers.get("x-ratelimit-bucket"),
            )
        if status == 401:
            raise Unauthorized(route.method, url, message)
        if status == 403:
            raise Forbidden(route.method, url, message)
        if status == 404:
            raise NotFound(route.method, url, message)
        if status >= 500:
            raise ServerError(status, route.method, url, message)
        raise UnknownHTTPError(status, route.method, url, message, error_data.get("code"))

    async def close(self) -> None:
        """Reject queued callers and close the HTTP connection pool."""
        self.buckets.clear(IntentError("REST client closed"))
        await self._client.aclose()

    # ---- servers ----

    async def get_server(self, server_id: str) -> Server:
        server_id = validate_snowflake(server_id, "serverId")
        data = await self.request("GET", f"/servers/{server_id}")
        return Server(**_object(data)).bind(self)

    async def list_servers(self) -> list[Server]:
        data = await self.request("GET", "/servers")
        return [Server(**s).bind(self) for s in _array(data)]

    async def create_server(
        self,
        name: str,
        icon: str | None = None,
        description: str | None = None,
    ) -> Server:
        payload: dict[str, Any] = {"name": name}
        if icon is not None:
            payload["icon"] = icon
        if description is not None:
            payload["description"] = description
        data = await self.request("POST", "/servers", payload)
        return Server(**_object(data)).bind(self)

    async def update_server(
        self,
        server_id: str,
        name: str | None = None,
        description: str | None = None,
    ) -> Server:
        server_id = validate_snowflake(server_id, "serverId")
        payload = _compact(name=name, description=description)
        data = await self.request("PATCH", f"/servers/{server_id}", payload)
        return Server(**_object(data)).bind(self)

    async def delete_server(self, server_id: str) -> None:
        server_id = validate_snowflake(server_id, "serverId")
        await self.request("DELETE", f"/servers/{server_id}")

    # ---- channels ----

    async def get_channel(self, channel_id: str) -> Channel:
        channel_id = validate_snowflake(channel_id, "channelId")
        data = await self.request("GET", f"/channels/{channel_id}")
        return Channel(**_object(data)).bind(self)

    async def list_channels(self, server_id: str) -> list[Channel]:
        server_id = validate_snowflake(server_id, "serverId")
        data = await self.request("GET", f"/servers/{server_id}/channels")
        return [Channel(**c).bind(self) for c in _array(data)]

    async def create_channel(
        self,
        server_id: str,
        name: str,
        type: int,
        topic: str | None = None,
        position: int | None = None,
    ) -> Channel:
        server_id = validate_snowflake(server_id, "serverId")
        payload = {"name": name, "type": type, **_compact(topic=topic, position=position)}
        data = await self.request("POST", f"/servers/{server_id}/channels", payload)
        return Channel(**_object(data)).bind(self)

    async def update_channel(
        self,
        channel_id: str,
        name: str | None = None,
        topic: str | None = None,
        position: int | None = None,
    ) -> Channel:
        channel_id = validate_snowflake(channel_id, "channelId")
        payload = _compact(name=name, topic=topic, position=position)
        data = await self.request("PATCH", f"/channels/{channel_id}", payload)
        return Channel(**_object(data)).bind(self)

    async def delete_channel(self, channel_id: str) -> None:
        channel_id = validate_snowflake(channel_id, "channelId")
        await self.request("DELETE", f"/channels/{channel_id}")

    # ---- messages ----

    async def get_message(self, channel_id: str, message_id: str) -> Message:
        channel_id = validate_snowflake(channel_id, "channelId")
        message_id = validate_snowflake(message_id, "messageId")
        data = await self.request("GET", f"/channels/{channel_id}/messages/{message_id}")
        return Message(**_object(data)).bind(self)

    async def list_messages(
        self,
        channel_id: str,
        limit: int | None = None,
        before: str | None = None,
        after: str | None = None,
    ) -> list[Message]:
        """List messages in a channel.

        Args:
            channel_id: Channel to read.
            limit: Max number of messages.
            before: Only messages older than this message id.
            after: Only messages newer than this message id.
        """
        channel_id = validate_snowflake(channel_id, "channelId")
        if before is not None:
            before = validate_snowflake(before, "before")
        if after is not None:
            after = validate_snowflake(after, "after")
        data = await self.request(
            "GET",
            f"/channels/{channel_id}/messages",
            query={"limit": limit, "before": before, "after": after},
        )
        return [Message(**m).bind(self) for m in _array(data)]

    async def create_message(
        self,
        channel_id: str,
        content: str | None = None,
        embeds: list[Any] | None = None,
    ) -> Message:
        channel_id = validate_snowflake(channel_id, "channelId")
        payload = _compact(content=content, embeds=embeds)
        data = await self.request("POST", f"/channels/{channel_id}/messages", payload)
        return Message(**_object(data)).bind(self)

    async def update_message(self, channel_id: str, message_id: str, content: str) -> Message:
        channel_id = validate_snowflake(channel_id, "channelId")
        message_id = validate_snowflake(message_id, "messageId")
        data = await self.request(
            "PATCH",
            f"/channels/{channel_id}/messages/{message_id}",
            {"content": content},
        )
        return Message(**_object(data)).bind(self)

    async def delete_message(self, channel_id: str, message_id: str) -> None:
        channel_id = validate_snowflake(channel_id, "channelId")
        message_id = validate_snowflake(message_id, "messageId")
        await self.request("DELETE", f"/channels/{channel_id}/messages/{message_id}")


def _compact(**fields: Any) -> dict[str, Any]:
    return {k: v for k, v in fields.items() if v is not None}


def _query_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _object(data: Any) -> dict[str, Any]:
    if not isinstance(data, dict):
        raise ProtocolError(f"Expected a JSON object in response, got {type(data).__name__}")
    return data


def _array(data: Any) -> list[dict[str, Any]]:
    if data is None:
        return []
    if not isinstance(data, list) or not all(isinstance(item, dict) for item in data):
        raise ProtocolError(f"Expected a JSON array of objects in response, got {type(data).__name__}")
    return data


def _parse_retry_after(raw: Any) -> float:
    if raw is None or raw == "" or isinstance(raw, bool):
        return DEFAULT_RETRY_AFTER
    try:
        return float(raw)
    except (TypeError, ValueError):
        return DEFAULT_RETRY_AFTER
