"""
Tests for the batch event bus: ordering, progress clamping, bounded queues,
terminal handling and the external notification channel.
"""

import asyncio
import logging
from unittest.mock import MagicMock

import pytest
from pydantic import ValidationError

from brandlens.core.events import GLOBAL_TOPIC, EventPublisher
from brandlens.core.models import BatchEvent, EventType
from brandlens.observability.metrics import get_metrics_collector
from brandlens.storage.base import NotificationChannel


def emit(publisher, event_type=EventType.PIPELINE_PROGRESS, execution_id="exec-1", **kwargs):
    return publisher.emit(
        event_type,
        batch_execution_id=execution_id,
        project_id="acme",
        project_name="Acme",
        **kwargs,
    )


class TestDelivery:
    @pytest.mark.asyncio
    async def test_scoped_and_global_subscribers(self):
        publisher = EventPublisher()
        scoped = publisher.subscribe("exec-1")
        other = publisher.subscribe("exec-2")
        everyone = publisher.subscribe()

        emit(publisher, EventType.BATCH_STARTED, progress=0)
        emit(publisher, EventType.PIPELINE_STARTED, pipeline_type="sentiment")

        assert [e.event_type for e in scoped.drain()] == [
            EventType.BATCH_STARTED,
            EventType.PIPELINE_STARTED,
        ]
        assert len(everyone.drain()) == 2
        assert other.drain() == []

    @pytest.mark.asyncio
    async def test_progress_is_clamped_per_execution(self):
        publisher = EventPublisher()
        subscription = publisher.subscribe("exec-1")

        emit(publisher, progress=50)
        delivered = emit(publisher, progress=30)
        emit(publisher, execution_id="exec-2", progress=10)

        assert delivered.progress == 50
        assert [e.progress for e in subscription.drain()] == [50, 50]

    @pytest.mark.asyncio
    async def test_async_iteration_ends_after_terminal_event(self):
        publisher = EventPublisher()
        subscription = publisher.subscribe("exec-1")

        emit(publisher, EventType.BATCH_STARTED, progress=0)
        emit(publisher, EventType.BATCH_COMPLETED, progress=100)

        received = [event.event_type async for event in subscription]

        assert received == [EventType.BATCH_STARTED, EventType.BATCH_COMPLETED]
        assert subscription.closed
        assert publisher.subscriber_count("exec-1") == 0

    @pytest.mark.asyncio
    async def test_global_subscription_survives_terminal_event(self):
        publisher = EventPublisher()
        everyone = publisher.subscribe()

        emit(publisher, EventType.BATCH_FAILED, error="boom")

        assert not everyone.closed
        assert publisher.subscriber_count() == 1

    @pytest.mark.asyncio
    async def test_delivery_from_another_thread(self):
        publisher = EventPublisher()
        subscription = publisher.subscribe("exec-1")

        await asyncio.to_thread(emit, publisher, EventType.PIPELINE_STARTED)
        event = await asyncio.wait_for(subscription.__anext__(), timeout=1)

        assert event.event_type is EventType.PIPELINE_STARTED

    @pytest.mark.asyncio
    async def test_context_manager_unsubscribes(self):
        publisher = EventPublisher()

        async with publisher.subscribe("exec-1") as subscription:
            assert publisher.subscriber_count("exec-1") == 1

        assert subscription.closed
        assert publisher.subscriber_count("exec-1") == 0


class TestBackpressure:
    @pytest.mark.asyncio
    async def test_full_queue_drops_event(self):
        publisher = EventPublisher()
        subscription = publisher.subscribe("exec-1", maxsize=2)

        for progress in (10, 20, 30):
            emit(publisher, progress=progress)

        assert subscription.dropped == 1
        assert [e.progress for e in subscription.drain()] == [10, 20]
        assert get_metrics_collector().get_summary()["events_dropped_total"] == 1

    @pytest.mark.asyncio
    async def test_terminal_event_evicts_oldest(self):
        publisher = EventPublisher()
        subscription = publisher.subscribe("exec-1", maxsize=2)

        emit(publisher, progress=10)
        emit(publisher, progress=20)
        emit(publisher, EventType.BATCH_COMPLETED, progress=100)

        received = [event async for event in subscription]

        assert [e.progress for e in received] == [20, 100]
        assert received[-1].is_terminal


class TestChannel:
    @pytest.mark.asyncio
    async def test_forwards_to_channel(self):
        channel = MagicMock(spec=NotificationChannel)
        publisher = EventPublisher(channel=channel)

        event = emit(publisher, EventType.PIPELINE_STARTED)

        channel.publish.assert_called_once_with("exec-1", event)

    @pytest.mark.asyncio
    async def test_channel_failure_is_logged(self, caplog):
        channel = MagicMock(spec=NotificationChannel)
        channel.publish.side_effect = ConnectionError("gateway down")
        publisher = EventPublisher(channel=channel)
        subscription = publisher.subscribe("exec-1")

        with caplog.at_level(logging.ERROR):
            emit(publisher, EventType.PIPELINE_STARTED)

        assert "Notification channel failed" in caplog.text
        assert len(subscription.drain()) == 1

    @pytest.mark.asyncio
    async def test_promptset_ready_goes_to_global_topic(self):
        channel = MagicMock(spec=NotificationChannel)
        publisher = EventPublisher(channel=channel)
        everyone = publisher.subscribe()

        emit(publisher, EventType.PROMPTSET_READY, execution_id="", message="ready")

        assert everyone.drain()[0].event_type is EventType.PROMPTSET_READY
        assert channel.publish.call_args.args[0] == GLOBAL_TOPIC


class TestWireShape:
    def test_camel_case_keys(self):
        event = BatchEvent(
            batch_execution_id="exec-1",
            project_id="acme",
            event_type=EventType.PIPELINE_COMPLETED,
            pipeline_type="comparison",
            progress=40,
        )

        wire = event.to_wire()

        assert wire["batchExecutionId"] == "exec-1"
        assert wire["eventType"] == "pipeline_completed"
        assert wire["pipelineType"] == "comparison"
        assert "error" not in wire

    @pytest.mark.parametrize("progress", [-1, 101])
    def test_progress_bounds(self, progress):
        with pytest.raises(ValidationError):
            BatchEvent(
                batch_execution_id="exec-1",
                project_id="acme",
                event_type=EventType.PIPELINE_PROGRESS,
                progress=progress,
            )
