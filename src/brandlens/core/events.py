"""
Publish/subscribe bus for batch events.

Topics are batch execution ids plus the wildcard ``"*"``. Each subscription
owns a bounded ``asyncio.Queue``; publishing never blocks the producer. When a
subscriber's queue is full the event is dropped for that subscriber only
(at-most-once, best-effort), except for terminal events, which evict the
oldest queued event so a scoped subscriber always learns that its run ended.
"""

import asyncio
import threading
from collections.abc import AsyncIterator

from ..observability.logging import get_logger
from ..observability.metrics import get_metrics_collector
from ..storage.base import NotificationChannel
from .models import BatchEvent, EventType, PipelineType

logger = get_logger(__name__)

GLOBAL_TOPIC = "*"

_END = object()


def _running_loop() -> asyncio.AbstractEventLoop | None:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


class Subscription:
    """Async iterator over the events of one topic."""

    def __init__(self, publisher: "EventPublisher", topic: str, maxsize: int):
        self.publisher = publisher
        self.topic = topic
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.loop = asyncio.get_running_loop()
        self.closed = False
        self.dropped = 0

    def _offer(self, event: BatchEvent) -> None:
        if self.closed:
            return
        if event.is_terminal and self.queue.full():
            self.queue.get_nowait()
            self._count_drop()
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            self._count_drop()

    def _count_drop(self) -> None:
        self.dropped += 1
        get_metrics_collector().increment("events_dropped_total", attributes={"topic": self.topic})

    def _end(self) -> None:
        if self.closed:
            return
        self.closed = True
        # With a full queue, __anext__ stops once it drains
        if not self.queue.full():
            self.queue.put_nowait(_END)

    def _call(self, func, *args) -> None:
        if _running_loop() is self.loop:
            func(*args)
        elif not self.loop.is_closed():
            self.loop.call_soon_threadsafe(func, *args)

    def deliver(self, event: BatchEvent) -> None:
        self._call(self._offer, event)

    def close(self) -> None:
        self._call(self._end)

    def drain(self) -> list[BatchEvent]:
        """Queued events without waiting."""
        events = []
        while not self.queue.empty():
            item = self.queue.get_nowait()
            if item is not _END:
                events.append(item)
        return events

    def __aiter__(self) -> AsyncIterator[BatchEvent]:
        return self

    async def __anext__(self) -> BatchEvent:
        if self.closed and self.queue.empty():
            raise StopAsyncIteration
        item = await self.queue.get()
        if item is _END:
            raise StopAsyncIteration
        return item

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        self.publisher.unsubscribe(self)


class EventPublisher:
    """Typed event bus with per-execution progress clamping."""

    def __init__(self, channel: NotificationChannel | None = None, queue_size: int = 256):
        self.channel = channel
        self.queue_size = queue_size
        self._lock = threading.Lock()
        self._subscribers: dict[str, list[Subscription]] = {}
        self._progress: dict[str, int] = {}

    def subscribe(
        self, batch_execution_id: str | None = None, maxsize: int | None = None
    ) -> Subscription:
        """Subscribe to one execution, or to every event when no id is given."""
        topic = batch_execution_id or GLOBAL_TOPIC
        subscription = Subscription(self, topic, maxsize or self.queue_size)
        with self._lock:
            self._subscribers.setdefault(topic, []).append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            subscribers = self._subscribers.get(subscription.topic, [])
            if subscription in subscribers:
                subscribers.remove(subscription)
            if not subscribers:
                self._subscribers.pop(subscription.topic, None)
        subscription.close()

    def subscriber_count(self, batch_execution_id: str | None = None) -> int:
        with self._lock:
            return len(self._subscribers.get(batch_execution_id or GLOBAL_TOPIC, []))

    def publish(self, event: BatchEvent) -> BatchEvent:
        """Deliver to scoped subscribers, then global ones, then the external channel.

        Returns the event as delivered, which may carry a clamped progress value.
        """
        topic = event.batch_execution_id or GLOBAL_TOPIC
        with self._lock:
            event = self._clamp(event)
            scoped = list(self._subscribers.get(topic, [])) if topic != GLOBAL_TOPIC else []
            everyone = list(self._subscribers.get(GLOBAL_TOPIC, []))
            if event.is_terminal:
                self._subscribers.pop(topic, None)
                self._progress.pop(topic, None)

        for subscription in scoped + everyone:
            subscription.deliver(event)
        if event.is_terminal:
            for subscription in scoped:
                subscription.close()

        get_metrics_collector().increment(
            "events_published_total", attributes={"event_type": event.event_type.value}
        )

        if self.channel is not None:
            try:
                self.channel.publish(topic, event)
            except Exception as e:
                logger.error(
                    f"Notification channel failed for {event.event_type.value}: {e}",
                    execution_id=event.batch_execution_id,
                )
        return event

    def _clamp(self, event: BatchEvent) -> BatchEvent:
        if event.progress is None or not event.batch_execution_id:
            return event
        last = self._progress.get(event.batch_execution_id, 0)
        if event.progress < last:
            event = event.model_copy(update={"progress": last})
        self._progress[event.batch_execution_id] = event.progress
        return event

    def emit(
        self,
        event_type: EventType,
        batch_execution_id: str,
        project_id: str,
        project_name: str = "",
        pipeline_type: PipelineType | str | None = None,
        message: str = "",
        progress: int | None = None,
        error: str | None = None,
    ) -> BatchEvent:
        """Build and publish an event."""
        if isinstance(pipeline_type, PipelineType):
            pipeline_type = pipeline_type.value
        return self.publish(
            BatchEvent(
                batch_execution_id=batch_execution_id,
                project_id=project_id,
                project_name=project_name,
                event_type=event_type,
                pipeline_type=pipeline_type,
                message=message,
                progress=progress,
                error=error,
            )
        )
