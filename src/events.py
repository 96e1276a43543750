"""
Status Streaming - In-memory pub/sub for per-user sync status.

Every observer of a user (API streams, CLI followers, other views) subscribes
by user id. The bus remembers the latest event per user; the last published
status wins.
"""

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, Optional, Tuple

from models import SyncStatus

logger = logging.getLogger(__name__)


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class EventType(Enum):
    """Types of status events."""

    STATUS = "STATUS"
    INVALIDATED = "INVALIDATED"


@dataclass
class StatusEvent:
    """Event emitted when a user's sync status changes."""

    event_type: EventType
    user_id: int
    status: SyncStatus
    sequence: int
    timestamp: str
    message: Optional[str] = None
    verdict: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type.value,
            "user_id": self.user_id,
            "status": self.status.value,
            "sequence": self.sequence,
            "timestamp": self.timestamp,
            "message": self.message,
            "verdict": self.verdict,
        }

    def to_sse(self) -> str:
        """
        Format the event as an SSE message.

        Returns:
            SSE-formatted string with event type, id and JSON data lines.
        """
        json_data = json.dumps(self.to_dict())
        return (
            f"event: {self.event_type.value}\n"
            f"id: {self.sequence}\n"
            f"data: {json_data}\n\n"
        )


class EventSubscription:
    """
    Async iterator for consuming events from a subscription.

    Reads events from a queue, applying an optional filter function.
    A ``None`` sentinel value stops iteration.
    """

    def __init__(
        self,
        queue: asyncio.Queue,
        filter_fn: Optional[Callable[["StatusEvent"], bool]] = None,
    ):
        self._queue = queue
        self._filter_fn = filter_fn

    def __aiter__(self) -> AsyncIterator["StatusEvent"]:
        return self

    async def __anext__(self) -> "StatusEvent":
        while True:
            event = await self._queue.get()

            if event is None:
                raise StopAsyncIteration

            if self._filter_fn is None or self._filter_fn(event):
                return event


class StatusBus:
    """
    Per-user status bus with last-write-wins semantics.

    Publishing is fire-and-forget: each subscriber has a bounded queue and
    events are dropped for subscribers whose queue is full. A dropped event
    is recovered by the next publish or by reading ``latest()``.
    """

    def __init__(self, queue_size: int = 256):
        self._queue_size = queue_size
        self._subscribers: Dict[str, Tuple[asyncio.Queue, Optional[int]]] = {}
        self._latest: Dict[int, StatusEvent] = {}
        self._sequence = 0
        self._lock = asyncio.Lock()

    async def publish(
        self,
        user_id: int,
        status: SyncStatus,
        message: Optional[str] = None,
        verdict: Optional[Dict[str, Any]] = None,
        event_type: EventType = EventType.STATUS,
    ) -> StatusEvent:
        """
        Publish a status for a user to all matching subscribers.

        Args:
            user_id: The user the status belongs to.
            status: The new status.
            message: Optional human-readable detail.
            verdict: Optional serialized verdict.
            event_type: STATUS for a new status, INVALIDATED when cached
                state was dropped.

        Returns:
            The published event.
        """
        async with self._lock:
            self._sequence += 1
            event = StatusEvent(
                event_type=event_type,
                user_id=user_id,
                status=status,
                sequence=self._sequence,
                timestamp=_utc_timestamp(),
                message=message,
                verdict=verdict,
            )
            self._latest[user_id] = event
            subscribers = list(self._subscribers.items())

        for subscriber_id, (queue, wanted_user) in subscribers:
            if wanted_user is not None and wanted_user != user_id:
                continue
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(
                    f"Dropped status event for subscriber {subscriber_id}: queue full"
                )

        return event

    def latest(self, user_id: int) -> Optional[StatusEvent]:
        """Return the most recently published event for a user."""
        return self._latest.get(user_id)

    async def subscribe(
        self,
        user_id: Optional[int] = None,
        filter_fn: Optional[Callable[[StatusEvent], bool]] = None,
    ) -> Tuple[str, EventSubscription]:
        """
        Subscribe to status events.

        Args:
            user_id: Only receive events for this user (None = all users).
            filter_fn: Optional predicate applied to each event.

        Returns:
            A tuple of ``(subscriber_id, EventSubscription)``.
        """
        subscriber_id = str(uuid.uuid4())
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)

        async with self._lock:
            self._subscribers[subscriber_id] = (queue, user_id)

        logger.info(f"New status subscriber: {subscriber_id} (user={user_id})")
        return subscriber_id, EventSubscription(queue, filter_fn)

    async def unsubscribe(self, subscriber_id: str) -> None:
        """
        Remove a subscriber and stop its iterator.

        Args:
            subscriber_id: The ID returned by :meth:`subscribe`.
        """
        async with self._lock:
            entry = self._subscribers.pop(subscriber_id, None)

        if entry is not None:
            queue, _ = entry
            try:
                queue.put_nowait(None)
            except asyncio.QueueFull:
                pass
            logger.info(f"Unsubscribed: {subscriber_id}")

    def subscriber_count(self) -> int:
        """Return the current number of subscribers."""
        return len(self._subscribers)
