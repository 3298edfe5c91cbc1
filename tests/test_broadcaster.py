"""Tests for per-job progress topics and the queue-backed event stream."""

from datetime import datetime, timezone

import pytest

from pdf2psd_backend.broadcaster import JobEventStream
from pdf2psd_backend.models import EventType, JobStatus, ProgressEvent


def event(progress=0, event_type=EventType.PROGRESS, status=JobStatus.PROCESSING, job_id="job-1"):
    return ProgressEvent(
        job_id=job_id,
        type=event_type,
        status=status,
        progress=progress,
        message=f"at {progress}",
        timestamp=datetime.now(timezone.utc),
    )


def test_publish_reaches_observers_in_order(broadcaster):
    first, second = [], []
    broadcaster.subscribe("job-1", first.append)
    broadcaster.subscribe("job-1", second.append)

    for value in (10, 20, 30):
        assert broadcaster.publish("job-1", event(value)) == 2

    assert [e.progress for e in first] == [10, 20, 30]
    assert [e.progress for e in second] == [10, 20, 30]


def test_topics_are_isolated(broadcaster):
    received = []
    broadcaster.subscribe("job-1", received.append)

    assert broadcaster.publish("job-2", event(50, job_id="job-2")) == 0
    assert received == []


def test_failing_observer_does_not_block_others(broadcaster):
    received = []

    def broken(_event):
        raise ConnectionError("socket closed")

    broadcaster.subscribe("job-1", broken)
    broadcaster.subscribe("job-1", received.append)

    assert broadcaster.publish("job-1", event(40)) == 1
    assert len(received) == 1


def test_unsubscribe_drops_empty_topic(broadcaster):
    received = []
    broadcaster.subscribe("job-1", received.append)
    broadcaster.subscribe("job-1", received.append)
    assert broadcaster.subscriber_count("job-1") == 1

    broadcaster.unsubscribe("job-1", received.append)
    broadcaster.unsubscribe("job-1", received.append)
    assert broadcaster.subscriber_count("job-1") == 0
    assert broadcaster.publish("job-1", event(10)) == 0


@pytest.mark.asyncio
async def test_stream_drops_stale_progress():
    stream = JobEventStream("job-1")
    stream.mark_seen(event(60))

    stream(event(40))
    stream(event(70))

    assert (await stream.next(timeout=0.1)).progress == 70
    assert await stream.next(timeout=0.01) is None


@pytest.mark.asyncio
async def test_stream_always_delivers_terminal_events():
    stream = JobEventStream("job-1")
    stream.mark_seen(event(90))

    stream(event(30, EventType.ERROR, JobStatus.ERROR))

    terminal = await stream.next(timeout=0.1)
    assert terminal.type is EventType.ERROR
    assert terminal.is_terminal


@pytest.mark.asyncio
async def test_stream_as_observer(broadcaster):
    stream = JobEventStream("job-1")
    broadcaster.subscribe("job-1", stream)

    broadcaster.publish("job-1", event(5))
    broadcaster.publish("job-1", event(100, EventType.COMPLETE, JobStatus.COMPLETED))

    assert (await stream.next(timeout=0.1)).progress == 5
    assert (await stream.next(timeout=0.1)).type is EventType.COMPLETE
