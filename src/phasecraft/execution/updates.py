"""Progress events and the buffered stream that carries them to observers."""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from phasecraft.storage.common import utc_now

logger = logging.getLogger(__name__)

DEFAULT_BUFFER_SIZE = 100
DEFAULT_PUBLISH_TIMEOUT_SECONDS = 1.0


class UpdateKind(str, Enum):
    STARTED = "started"
    PROGRESS = "progress"
    COMPLETED = "completed"
    ERROR = "error"
    BLOCKED = "blocked"
    PAUSED = "paused"
    RESUMED = "resumed"
    SKIPPED = "skipped"


@dataclass(frozen=True, slots=True)
class TaskUpdate:
    """Immutable progress event; phase-level events carry an empty `task_id`."""

    task_id: str
    phase_id: str
    kind: UpdateKind
    content: str = ""
    timestamp: datetime = field(default_factory=utc_now)
    error: str | None = None


class UpdateSubscription:
    """Independently buffered view of the stream.

    Readers and writers wait on one condition; `close()` wakes both.
    """

    def __init__(self, buffer_size: int = DEFAULT_BUFFER_SIZE) -> None:
        self._buffer: deque[TaskUpdate] = deque()
        self._capacity = buffer_size
        self._condition = threading.Condition()
        self._closed = False

    @property
    def closed(self) -> bool:
        with self._condition:
            return self._closed

    def get(self, timeout: float | None = None) -> TaskUpdate | None:
        """Next event, or `None` on timeout or once closed and drained."""

        with self._condition:
            self._condition.wait_for(lambda: bool(self._buffer) or self._closed, timeout=timeout)
            if not self._buffer:
                return None
            update = self._buffer.popleft()
            self._condition.notify_all()
            return update

    def drain(self) -> list[TaskUpdate]:
        """Every event buffered right now, without waiting."""

        with self._condition:
            updates = list(self._buffer)
            self._buffer.clear()
            self._condition.notify_all()
            return updates

    def __iter__(self) -> Iterator[TaskUpdate]:
        while True:
            update = self.get()
            if update is None:
                return
            yield update

    def offer(self, update: TaskUpdate, timeout: float) -> bool:
        """Buffer `update`, waiting up to `timeout` for room; `False` if still full."""

        with self._condition:
            if not self._condition.wait_for(lambda: self._has_room() or self._closed, timeout):
                return False
            if self._closed:
                return True
            self._buffer.append(update)
            self._condition.notify_all()
            return True

    def close(self) -> None:
        with self._condition:
            self._closed = True
            self._condition.notify_all()

    def _has_room(self) -> bool:
        return self._capacity <= 0 or len(self._buffer) < self._capacity


class UpdateStream(UpdateSubscription):
    """The engine's single shared channel plus optional fan-out subscriptions.

    Reading the stream itself consumes the shared channel. `subscribe()` adds
    observers that each receive every event published afterwards. Publishing
    waits at most `publish_timeout_seconds` per consumer, then drops the event
    for that consumer.
    """

    def __init__(
        self,
        *,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
        publish_timeout_seconds: float = DEFAULT_PUBLISH_TIMEOUT_SECONDS,
    ) -> None:
        super().__init__(buffer_size)
        self._buffer_size = buffer_size
        self._publish_timeout = publish_timeout_seconds
        self._publish_lock = threading.Lock()
        self._subscriptions: list[UpdateSubscription] = []

    def subscribe(self, buffer_size: int | None = None) -> UpdateSubscription:
        subscription = UpdateSubscription(buffer_size or self._buffer_size)
        with self._publish_lock:
            if self.closed:
                subscription.close()
            else:
                self._subscriptions.append(subscription)
        return subscription

    def publish(self, update: TaskUpdate) -> None:
        with self._publish_lock:
            if self.closed:
                logger.debug("Dropping %s update for closed stream.", update.kind.value)
                return
            self._subscriptions = [item for item in self._subscriptions if not item.closed]
            consumers: list[UpdateSubscription] = [self, *self._subscriptions]
            for consumer in consumers:
                if not consumer.offer(update, self._publish_timeout):
                    logger.warning(
                        "Update buffer full, dropping %s event (task=%s phase=%s).",
                        update.kind.value,
                        update.task_id,
                        update.phase_id,
                    )

    def close(self) -> None:
        with self._publish_lock:
            super().close()
            for subscription in self._subscriptions:
                subscription.close()
