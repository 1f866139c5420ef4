"""User domain events and their fire-and-forget delivery."""

from __future__ import annotations

import logging
import queue
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Deque, Dict, List, Optional, Protocol, Tuple

from .models import User

logger = logging.getLogger("userservice.events")

DEFAULT_USER_EVENTS_TOPIC = "user-events"


class EventDeliveryError(RuntimeError):
    """Raised by an event channel when a message could not be delivered."""


class EventType(str, Enum):
    USER_CREATED = "USER_CREATED"
    USER_DELETED = "USER_DELETED"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class UserEvent:
    """Immutable fact describing a state transition of exactly one user."""

    event_type: EventType
    user_id: int
    email: str
    username: str
    timestamp: datetime = field(default_factory=_utcnow)

    @classmethod
    def for_user(cls, event_type: EventType, user: User) -> "UserEvent":
        if user.id is None:
            raise ValueError("Events can only describe persisted users")
        return cls(
            event_type=event_type,
            user_id=user.id,
            email=user.email,
            username=user.name,
        )

    @property
    def partition_key(self) -> str:
        return self.email

    def to_payload(self) -> Dict[str, object]:
        return {
            "userId": self.user_id,
            "email": self.email,
            "username": self.username,
            "eventType": self.event_type.value,
            "timestamp": self.timestamp.isoformat(),
        }


class EventChannel(Protocol):
    """Publish primitive of an external message channel."""

    def publish(self, topic: str, key: str, payload: Dict[str, object]) -> None:
        ...


class InMemoryEventChannel:
    """Channel that keeps the most recent messages in memory.

    Used when no broker is configured and throughout the test-suite. Setting
    :attr:`fail_with` makes every publish raise that exception.
    """

    def __init__(self, *, max_messages: int = 1000) -> None:
        self._messages: Deque[Tuple[str, str, Dict[str, object]]] = deque(maxlen=max_messages)
        self._lock = threading.Lock()
        self.fail_with: Optional[Exception] = None

    def publish(self, topic: str, key: str, payload: Dict[str, object]) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        with self._lock:
            self._messages.append((topic, key, dict(payload)))
        logger.debug("Recorded in-memory event for %s on %s", key, topic)

    @property
    def messages(self) -> List[Tuple[str, str, Dict[str, object]]]:
        with self._lock:
            return list(self._messages)

    def clear(self) -> None:
        with self._lock:
            self._messages.clear()


@dataclass
class PublisherStats:
    delivered: int = 0
    failed: int = 0
    dropped: int = 0


_STOP = object()


class UserEventPublisher:
    """Hands user events to a channel without waiting for delivery.

    :meth:`send` only places the event on a bounded queue. A daemon worker
    drains the queue and publishes each event; the outcome is logged and
    counted but never reported back to the caller, and nothing is retried.
    """

    def __init__(
        self,
        channel: EventChannel,
        *,
        topic: str = DEFAULT_USER_EVENTS_TOPIC,
        max_pending: int = 1000,
    ) -> None:
        if max_pending < 1:
            raise ValueError("max_pending must be at least 1")
        self._channel = channel
        self._topic = topic
        self._queue: "queue.Queue[object]" = queue.Queue(maxsize=max_pending)
        self._lock = threading.Lock()
        self._worker: Optional[threading.Thread] = None
        self._stopping = False
        self._stats = PublisherStats()

    @property
    def topic(self) -> str:
        return self._topic

    @property
    def channel(self) -> EventChannel:
        return self._channel

    @property
    def running(self) -> bool:
        worker = self._worker
        return worker is not None and worker.is_alive()

    @property
    def stats(self) -> PublisherStats:
        with self._lock:
            return PublisherStats(
                delivered=self._stats.delivered,
                failed=self._stats.failed,
                dropped=self._stats.dropped,
            )

    def start(self) -> None:
        with self._lock:
            if self._worker is not None and self._worker.is_alive():
                return
            self._stopping = False
            self._worker = threading.Thread(
                target=self._run,
                name="user-event-publisher",
                daemon=True,
            )
            self._worker.start()
        logger.info("User event publisher started for topic %s", self._topic)

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        """Stop the worker after it has drained the events already queued."""

        with self._lock:
            worker = self._worker
            if worker is None:
                return
            self._stopping = True
        self._queue.put(_STOP)
        worker.join(timeout)
        if worker.is_alive():
            logger.warning("User event publisher did not stop within %s seconds", timeout)
            return
        with self._lock:
            self._worker = None
        logger.info("User event publisher stopped")

    def flush(self) -> None:
        """Block until every queued event has been handed to the channel."""

        if not self.running:
            raise RuntimeError("Publisher is not running")
        self._queue.join()

    def send(self, event: UserEvent) -> None:
        # Holding the lock keeps every accepted event ahead of the stop marker.
        with self._lock:
            if self._stopping:
                reason = "publisher is stopping"
            else:
                try:
                    self._queue.put_nowait(event)
                    return
                except queue.Full:
                    reason = "queue is full"
            self._stats.dropped += 1
        self._log_drop(event, reason)

    def _log_drop(self, event: UserEvent, reason: str) -> None:
        logger.error(
            "Dropped user event %s for user %s: %s",
            event.event_type.value,
            event.user_id,
            reason,
        )

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                self._deliver(item)  # type: ignore[arg-type]
            finally:
                self._queue.task_done()

    def _deliver(self, event: UserEvent) -> None:
        try:
            self._channel.publish(self._topic, event.partition_key, event.to_payload())
        except Exception as exc:
            with self._lock:
                self._stats.failed += 1
            logger.error(
                "Failed to send user event %s for user %s: %s",
                event.event_type.value,
                event.user_id,
                exc,
            )
            return

        with self._lock:
            self._stats.delivered += 1
        logger.info(
            "User event sent successfully: %s to topic: %s",
            event.event_type.value,
            self._topic,
        )


__all__ = [
    "DEFAULT_USER_EVENTS_TOPIC",
    "EventChannel",
    "EventDeliveryError",
    "EventType",
    "InMemoryEventChannel",
    "PublisherStats",
    "UserEvent",
    "UserEventPublisher",
]
