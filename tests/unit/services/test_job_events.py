"""Unit tests for JobEventBus."""

from __future__ import annotations

import json

import pytest

from job_board_service.services.job_events import JobEventBus


@pytest.mark.unit
def test_publish_reaches_only_subscribers_of_that_job() -> None:
    bus = JobEventBus(queue_size=10)
    watched = bus.subscribe("job-1")
    other = bus.subscribe("job-2")

    event = bus.publish("job-1", "status_changed", {"status": "open"})

    assert watched.get_nowait() == event
    assert other.empty()
    assert event["type"] == "status_changed"
    assert event["data"] == {"status": "open"}


@pytest.mark.unit
def test_sequence_increases() -> None:
    bus = JobEventBus(queue_size=10)

    first = bus.publish("job-1", "a", {})
    second = bus.publish("job-2", "b", {})

    assert second["sequence"] == first["sequence"] + 1


@pytest.mark.unit
def test_full_queue_drops_event() -> None:
    bus = JobEventBus(queue_size=1)
    queue = bus.subscribe("job-1")

    bus.publish("job-1", "first", {})
    bus.publish("job-1", "second", {})

    assert queue.qsize() == 1
    assert queue.get_nowait()["type"] == "first"


@pytest.mark.unit
def test_unsubscribe_forgets_job() -> None:
    bus = JobEventBus(queue_size=10)
    queue = bus.subscribe("job-1")
    assert bus.subscriber_count("job-1") == 1

    bus.unsubscribe("job-1", queue)
    bus.unsubscribe("job-1", queue)

    assert bus.subscriber_count("job-1") == 0


@pytest.mark.unit
async def test_stream_yields_retry_then_events() -> None:
    bus = JobEventBus(queue_size=10)
    stream = bus.stream("job-1", keepalive_seconds=5)

    assert await anext(stream) == {"retry": 3000}
    assert bus.subscriber_count("job-1") == 1

    published = bus.publish("job-1", "task_completed", {"task_id": "task-1"})
    message = await anext(stream)

    assert message["event"] == "task_completed"
    assert message["id"] == str(published["sequence"])
    assert json.loads(message["data"])["data"] == {"task_id": "task-1"}

    await stream.aclose()
    assert bus.subscriber_count("job-1") == 0


@pytest.mark.unit
async def test_stream_sends_keepalive_when_idle() -> None:
    bus = JobEventBus(queue_size=10)
    stream = bus.stream("job-1", keepalive_seconds=0.01)

    await anext(stream)

    assert await anext(stream) == {"comment": "keepalive"}
    await stream.aclose()
