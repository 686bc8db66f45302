"""
Per-route rate-limit buckets.

A :class:`Bucket` admits at most ``limit`` calls per reset window for one
route partition. Admission runs inside an ``asyncio.Lock`` (granted in
arrival order), so concurrent callers never race on ``remaining``. Callers
that find the window exhausted park on a future; a single queue-processor
task per bucket sleeps until the reset and releases them in FIFO order.

The server's ``x-ratelimit-*`` headers are ground truth: every completed
call feeds them back through :meth:`Bucket.update`, and local accounting
is only a forward estimate between round trips.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections import deque
from typing import Mapping

logger = logging.getLogger(__name__)

# How long an exhausted queue waits for the server to announce the next
# window before assuming a fresh one.
WINDOW_FALLBACK_SECONDS = 1.0


class Bucket:
    """Remaining quota and reset time for one rate-limit partition."""

    def __init__(self, key: str | None = None) -> None:
        self.key = key
        # Unknown until the first response carries headers
        self.limit: float = math.inf
        self.remaining: float = math.inf
        self.reset: float = 0.0  # epoch seconds
        self.bucket_id: str | None = None

        self._lock = asyncio.Lock()
        self._queue: deque[asyncio.Future[None]] = deque()
        self._processor: asyncio.Task[None] | None = None
        self._reset_moved = asyncio.Event()

    def __repr__(self) -> str:
        return (
            f"Bucket(key={self.key!r}, limit={self.limit}, remaining={self.remaining}, "
            f"reset={self.reset}, queued={len(self._queue)})"
        )

    @property
    def queued(self) -> int:
        """Number of callers waiting for the next window."""
        return len(self._queue)

    async def acquire(self) -> None:
        """Wait until a call may be made under this bucket.

        Safe to call from any number of concurrent tasks. Returns once the
        caller holds one slot of the current window.
        """
        async with self._lock:
            self._refill_if_expired()
            if self.remaining > 0:
                self.remaining -= 1
                return

            waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
            self._queue.append(waiter)
            logger.debug(
                "Bucket %s exhausted, queued (%d waiting, reset in %.2fs)",
                self.key, len(self._queue), max(self.reset - time.time(), 0.0),
            )
            self._ensure_processor()

        await waiter

    def update(
        self,
        limit: int | None = None,
        remaining: int | None = None,
        reset: float | None = None,
        bucket_id: str | None = None,
    ) -> None:
        """Apply server-reported rate-limit state.

        ``None`` means the server did not send that value. A reset older
        than the one already known comes from a stale response and leaves
        ``remaining`` and ``reset`` alone.
        """
        if limit is not None:
            self.limit = limit
        if bucket_id is not None:
            self.bucket_id = bucket_id

        if reset is not None and reset < self.reset:
            logger.debug("Ignoring stale rate-limit state for bucket %s", self.key)
            return

        if remaining is not None:
            self.remaining = max(0, remaining)
        if reset is not None:
            if reset > self.reset:
                self._reset_moved.set()
            self.reset = reset

    def update_from_headers(self, headers: Mapping[str, str]) -> None:
        """Parse ``x-ratelimit-*`` headers and :meth:`update` from them."""
        self.update(
            limit=_parse_number(headers, "x-ratelimit-limit", int),
            remaining=_parse_number(headers, "x-ratelimit-remaining", int),
            reset=_parse_number(headers, "x-ratelimit-reset", float),
            bucket_id=headers.get("x-ratelimit-bucket") or None,
        )

    def clear(self, reason: BaseException) -> None:
        """Reject every queued caller with ``reason``."""
        while self._queue:
            waiter = self._queue.popleft()
            if not waiter.done():
                waiter.set_exception(reason)
        if self._processor is not None and not self._processor.done():
            self._processor.cancel()
        self._processor = None

    # -- internals ----------------------------------------------------------

    def _refill_if_expired(self) -> None:
        if self.reset > 0 and time.time() >= self.reset:
            self.remaining = self.limit

    def _ensure_processor(self) -> None:
        if self._processor is None or self._processor.done():
            self._processor = asyncio.create_task(self._process_queue())

    async def _process_queue(self) -> None:
        while self._queue:
            delay = self.reset - time.time()
            if delay > 0:
                await asyncio.sleep(delay)
                # update() may have pushed the reset forward while we slept
                continue

            async with self._lock:
                if self.reset > time.time():
                    continue
                self.remaining = self.limit
                self._admit_waiters()

            if self._queue:
                await self._wait_for_next_window()

    def _admit_waiters(self) -> None:
        while self._queue and self.remaining > 0:
            waiter = self._queue.popleft()
            if waiter.done():
                # caller was cancelled while queued
                continue
            self.remaining -= 1
            waiter.set_result(None)

    async def _wait_for_next_window(self) -> None:
        if self.reset > time.time():
            return
        self._reset_moved.clear()
        try:
            await asyncio.wait_for(self._reset_moved.wait(), timeout=WINDOW_FALLBACK_SECONDS)
        except asyncio.TimeoutError:
            logger.debug("No new window announced for bucket %s, assuming reset", self.key)


class BucketRegistry:
    """Lookup-or-create map from bucket key to :class:`Bucket`.

    Entries are never evicted; the map is bounded by the number of route
    partitions a bot actually uses.
    """

    def __init__(self) -> None:
        self._buckets: dict[str, Bucket] = {}

    def get(self, key: str) -> Bucket:
        bucket = self._buckets.get(key)
        if bucket is None:
            bucket = self._buckets.setdefault(key, Bucket(key))
        return bucket

    def __contains__(self, key: object) -> bool:
        return key in self._buckets

    def __len__(self) -> int:
        return len(self._buckets)

    def clear(self, reason: BaseException) -> None:
        """Reject queued callers on every bucket (used on shutdown)."""
        for bucket in self._buckets.values():
            bucket.clear(reason)


def _parse_number(headers: Mapping[str, str], name: str, cast: type) -> int | float | None:
    raw = headers.get(name)
    if not raw:
        return None
    try:
        return cast(float(raw)) if cast is int else cast(raw)
    except ValueError:
        logger.debug("Malformed %s header: %r", name, raw)
        return None
