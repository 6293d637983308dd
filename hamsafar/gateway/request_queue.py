"""Bounded FIFO request queue for the serial dispatch policy.

Holds PendingRequests together with the future that will carry their
terminal CallResult. The bound is enforced at enqueue time: a full queue
raises QueueFullError immediately instead of blocking the submitter.
Requests abandoned while waiting are taken out with discard(), so they
stop counting against the bound.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass

from hamsafar.gateway.types import PendingRequest

logger = logging.getLogger(__name__)


class QueueFullError(Exception):
    """Raised when the backlog is at capacity."""

    def __init__(self, max_depth: int):
        super().__init__(f"Request queue is full ({max_depth} pending)")
        self.max_depth = max_depth


@dataclass(eq=False)
class QueueItem:
    """A queued request and the caller-visible result channel."""

    request: PendingRequest
    future: asyncio.Future


class RequestQueue:
    """Strict FIFO queue with a hard depth limit.

    Usage:
        queue = RequestQueue(max_depth=50)

        future = loop.create_future()
        queue.enqueue(QueueItem(request, future))  # raises QueueFullError

        item = await queue.dequeue()
        queue.discard(request)  # caller gave up before it was dequeued
    """

    def __init__(self, max_depth: int = 50):
        self.max_depth = max_depth
        self._items: deque[QueueItem] = deque()
        self._not_empty = asyncio.Event()

    def enqueue(self, item: QueueItem) -> int:
        """Append an item; returns its 1-based position in the queue."""
        if len(self._items) >= self.max_depth:
            raise QueueFullError(self.max_depth)

        self._items.append(item)
        self._not_empty.set()

        position = len(self._items)
        logger.debug(
            "Enqueued request %s (%s), position %d",
            item.request.correlation_id,
            item.request.kind.value,
            position,
        )
        return position

    async def dequeue(self) -> QueueItem:
        """Wait for and remove the oldest item."""
        while not self._items:
            self._not_empty.clear()
            await self._not_empty.wait()
        return self._items.popleft()

    def discard(self, request: PendingRequest) -> bool:
        """Remove a still-queued request. Returns False if it is not queued."""
        for item in self._items:
            if item.request is request:
                self._items.remove(item)
                logger.debug("Discarded queued request %s", request.correlation_id)
                return True
        return False

    def drain(self) -> list[QueueItem]:
        """Remove and return everything still queued, oldest first."""
        items = list(self._items)
        self._items.clear()
        return items

    def depth(self) -> int:
        return len(self._items)

    def is_full(self) -> bool:
        return len(self._items) >= self.max_depth

    def get_stats(self) -> dict:
        """Get queue statistics."""
        return {
            "depth": self.depth(),
            "max_depth": self.max_depth,
        }
