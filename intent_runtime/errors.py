"""
Exception hierarchy for the Intent runtime SDK.

Everything raised by the SDK derives from :class:`IntentError`. HTTP
failures carry the status code, the server's error code (when given) and
the method/url of the failed request.
"""

from __future__ import annotations


class IntentError(Exception):
    """Base class for all Intent SDK errors."""


class IntentConnectionError(IntentError):
    """Transport-level failure (socket could not open, HTTP connection reset)."""


class ProtocolError(IntentError):
    """A gateway frame could not be decoded."""


class HeartbeatTimeout(IntentError):
    """The gateway stopped acknowledging heartbeats.

    Used as the close reason for the dead socket. It is never raised to
    callers: it shows up as a ``disconnect`` notification followed by
    automatic reconnection.
    """

    def __init__(self, missed: int) -> None:
        super().__init__(f"Heartbeat timeout ({missed} missed acks)")
        self.missed = missed


class ValidationError(IntentError):
    """A malformed identifier was passed to a REST operation."""


class RequestTimeoutError(IntentError):
    """A REST call exceeded the client-side deadline."""

    def __init__(self, method: str, url: str, timeout: float) -> None:
        super().__init__(f"{method} {url} timed out after {timeout:g}s")
        self.method = method
        self.url = url
        self.timeout = timeout


class HTTPError(IntentError):
    """Non-2xx response from the REST API."""

    def __init__(
        self,
        status: int,
        method: str,
        url: str,
        message: str,
        code: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.method = method
        self.url = url
        self.code = code

    def __str__(self) -> str:
        return f"{self.method} {self.url} failed ({self.status}): {self.args[0]}"


class RateLimitExceeded(HTTPError):
    """429 Too Many Requests."""

    def __init__(
        self,
        method: str,
        url: str,
        retry_after: float,
        global_: bool = False,
        bucket: str | None = None,
    ) -> None:
        super().__init__(
            429,
            method,
            url,
            f"Rate limit exceeded. Retry after {retry_after:g}s",
            "RATE_LIMIT_EXCEEDED",
        )
        self.retry_after = retry_after
        self.global_ = global_
        self.bucket = bucket


class Unauthorized(HTTPError):
    """401 Unauthorized."""

    def __init__(self, method: str, url: str, message: str) -> None:
        super().__init__(401, method, url, message, "UNAUTHORIZED")


class Forbidden(HTTPError):
    """403 Forbidden."""

    def __init__(self, method: str, url: str, message: str) -> None:
        super().__init__(403, method, url, message, "FORBIDDEN")


class NotFound(HTTPError):
    """404 Not Found."""

    def __init__(self, method: str, url: str, message: str) -> None:
        super().__init__(404, method, url, message, "NOT_FOUND")


class ServerError(HTTPError):
    """5xx response. Retried with exponential backoff."""

    def __init__(self, status: int, method: str, url: str, message: str) -> None:
        super().__init__(status, method, url, message, "SERVER_ERROR")


class UnknownHTTPError(HTTPError):
    """Any other non-2xx response."""
