"""Best-effort fan-out of worker events to bounded per-subscriber channels."""

from __future__ import annotations

import logging
import queue
import threading

from agent_engine.models import WorkerEvent

logger = logging.getLogger(__name__)

DEFAULT_CHANNEL_SIZE = 256


class Subscription:
    """One subscriber's channel. Publishing never blocks on it; overflow is dropped."""

    def __init__(self, bus: EventBus, *, task_id: str | None, maxsize: int) -> None:
        self._bus = bus
        self.task_id = task_id
        self._channel: queue.Queue[WorkerEvent] = queue.Queue(maxsize=maxsize)
        self._closed = threading.Event()
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def matches(self, event: WorkerEvent) -> bool:
        return self.task_id is None or self.task_id == event.task_id

    def offer(self, event: WorkerEvent) -> bool:
        if self.closed:
            return False
        try:
            self._channel.put_nowait(event)
        except queue.Full:
            self.dropped += 1
            return False
        return True

    def get(self, timeout: float | None = None) -> WorkerEvent | None:
        try:
            return self._channel.get(timeout=timeout) if timeout else self._channel.get_nowait()
        except queue.Empty:
            return None

    def drain(self) -> list[WorkerEvent]:
        events: list[WorkerEvent] = []
        while True:
            try:
                events.append(self._channel.get_nowait())
            except queue.Empty:
                return events

    def close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        self._bus._remove(self)

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class EventBus:
    def __init__(self, *, channel_size: int = DEFAULT_CHANNEL_SIZE) -> None:
        self.channel_size = channel_size
        self._lock = threading.Lock()
        self._subscriptions: list[Subscription] = []

    def subscribe(self, *, task_id: str | None = None, maxsize: int | None = None) -> Subscription:
        subscription = Subscription(self, task_id=task_id, maxsize=maxsize or self.channel_size)
        with self._lock:
            self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscription.close()

    def publish(self, event: WorkerEvent) -> int:
        with self._lock:
            targets = [subscription for subscription in self._subscriptions if subscription.matches(event)]
        delivered = 0
        for subscription in targets:
            if subscription.offer(event):
                delivered += 1
            else:
                logger.debug(
                    "event_bus event=dropped type=%s task_id=%s", event.type, event.task_id
                )
        return delivered

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def _remove(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)
