"""Tests for rollup event publishing, progress ordering and projection."""

import asyncio
import json

import pytest

from graphrollup.infra.broadcast.memory import InMemoryBroadcaster
from graphrollup.infra.broadcast.redis import RedisBroadcaster
from graphrollup.rollup.errors import RollupErrorCode
from graphrollup.rollup.events import (
    EventEnvelope,
    PhaseTracker,
    RollupEventPublisher,
    RollupEventType,
    project_execution,
    replay_execution,
)
from graphrollup.rollup.types import ExecutionPhase, ExecutionStatus
from tests.helpers import TENANT, RecordingBroadcaster


class FailingBroadcaster(RecordingBroadcaster):
    async def publish(self, channel, message):
        raise ConnectionError("broker unavailable")


class FakeRedis:
    def __init__(self):
        self.published = []
        self.closed = False

    async def publish(self, channel, message):
        self.published.append((channel, message))

    async def aclose(self):
        self.closed = True


def envelope(type, event_id, **payload):
    return EventEnvelope(type=type, event_id=event_id, tenant_id=TENANT, payload=payload)


# ---------------------------------------------------------------------------
# Phase tracking
# ---------------------------------------------------------------------------


def test_phase_tracker_overall_progress():
    tracker = PhaseTracker()
    assert tracker.overall == 0

    tracker.enter(ExecutionPhase.LOADING)
    tracker.clamp(50)
    assert tracker.overall == 12

    tracker.enter(ExecutionPhase.MERGING)
    assert tracker.percentage == 0
    tracker.clamp(100)
    assert tracker.overall == 75


def test_phase_tracker_rejects_going_back():
    tracker = PhaseTracker()
    tracker.enter(ExecutionPhase.MATCHING)

    with pytest.raises(ValueError):
        tracker.enter(ExecutionPhase.LOADING)


def test_phase_tracker_never_decreases_within_a_phase():
    tracker = PhaseTracker()
    tracker.enter(ExecutionPhase.LOADING)

    assert tracker.clamp(60) == 60
    assert tracker.clamp(40) == 60
    assert tracker.clamp(250) == 100
    # re-entering the current phase keeps its progress
    tracker.enter(ExecutionPhase.LOADING)
    assert tracker.percentage == 100


@pytest.mark.asyncio
async def test_progress_events_are_clamped(publisher, broadcaster):
    for phase, pct in (
        (ExecutionPhase.LOADING, 30),
        (ExecutionPhase.LOADING, 10),
        (ExecutionPhase.MATCHING, -5),
    ):
        await publisher.progress(
            tenant_id=TENANT, rollup_id="r1", execution_id="e1", phase=phase, percentage=pct
        )

    payloads = [e["payload"] for e in broadcaster.events(RollupEventType.EXECUTION_PROGRESS.value)]
    assert [p["percentage"] for p in payloads] == [30, 30, 0]
    assert [p["overallProgress"] for p in payloads] == [7, 7, 25]

    with pytest.raises(ValueError):
        await publisher.progress(
            tenant_id=TENANT,
            rollup_id="r1",
            execution_id="e1",
            phase=ExecutionPhase.LOADING,
            percentage=90,
        )


@pytest.mark.asyncio
async def test_terminal_events_reset_the_tracker(publisher):
    await publisher.progress(
        tenant_id=TENANT, rollup_id="r1", execution_id="e1", phase=ExecutionPhase.STORING, percentage=50
    )
    await publisher.execution_completed(tenant_id=TENANT, rollup_id="r1", execution_id="e1", stats={})

    assert publisher.tracker("e1").phase is None


# ---------------------------------------------------------------------------
# Publishing
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_events_go_to_the_tenant_channel(publisher, broadcaster):
    await publisher.publish(
        RollupEventType.CONFIGURATION_CREATED,
        TENANT,
        {"rollupId": "r1"},
        stream_id="r1",
        triggered_by="user-1",
        correlation_id="r1",
    )

    channel, message = broadcaster.messages[0]
    data = json.loads(message)
    assert channel == "rollup:org-1"
    assert set(data) >= {"type", "eventId", "tenantId", "timestamp", "payload", "metadata"}
    assert data["metadata"] == {
        "correlationId": "r1",
        "causationId": None,
        "triggeredBy": "user-1",
        "source": "graphrollup",
        "context": None,
    }


@pytest.mark.asyncio
async def test_broadcast_failures_are_not_raised(session_factory):
    publisher = RollupEventPublisher(
        broadcaster=FailingBroadcaster(), session_factory=session_factory
    )

    await publisher.execution_started(
        tenant_id=TENANT, rollup_id="r1", execution_id="e1", repository_ids=["a", "b"], scan_ids=[]
    )

    # still recorded in the event log
    with session_factory() as session:
        assert replay_execution(session, "e1").status == ExecutionStatus.RUNNING


@pytest.mark.asyncio
async def test_publisher_without_sinks():
    publisher = RollupEventPublisher()

    event = await publisher.execution_started(
        tenant_id=TENANT, rollup_id="r1", execution_id="e1", repository_ids=[], scan_ids=[]
    )

    assert event.metadata.correlation_id == "r1"


@pytest.mark.asyncio
async def test_subscribers_receive_rollup_events():
    broadcaster = InMemoryBroadcaster()
    publisher = RollupEventPublisher(broadcaster=broadcaster)
    received = []

    async def consume():
        async for message in broadcaster.subscribe(publisher.channel_for(TENANT)):
            received.append(json.loads(message)["type"])
            if len(received) == 2:
                break

    task = asyncio.create_task(consume())
    await asyncio.sleep(0.01)
    assert broadcaster.subscriber_count("rollup:org-1") == 1

    await publisher.execution_started(
        tenant_id=TENANT, rollup_id="r1", execution_id="e1", repository_ids=[], scan_ids=[]
    )
    await publisher.publish(RollupEventType.CONFIGURATION_CREATED, "org-2", {}, stream_id="r2")
    await publisher.execution_completed(tenant_id=TENANT, rollup_id="r1", execution_id="e1", stats={})
    await asyncio.wait_for(task, timeout=1.0)

    assert received == ["rollup.execution.started", "rollup.execution.completed"]


@pytest.mark.asyncio
async def test_closed_memory_broadcaster_drops_messages():
    broadcaster = InMemoryBroadcaster()
    await broadcaster.close()

    await broadcaster.publish("rollup:org-1", "ignored")

    assert broadcaster.subscriber_count("rollup:org-1") == 0


@pytest.mark.asyncio
async def test_full_subscriber_queue_counts_dropped_messages():
    broadcaster = InMemoryBroadcaster(max_queue_size=1)
    stream = broadcaster.subscribe("rollup:org-1")
    first = asyncio.create_task(stream.__anext__())
    await asyncio.sleep(0.01)

    await broadcaster.publish("rollup:org-1", "one")
    assert await asyncio.wait_for(first, timeout=1.0) == "one"
    await broadcaster.publish("rollup:org-1", "two")
    await broadcaster.publish("rollup:org-1", "three")

    assert broadcaster.dropped == 1
    assert await stream.__anext__() == "two"
    await stream.aclose()


@pytest.mark.asyncio
async def test_redis_broadcaster_publishes_through_client():
    client = FakeRedis()
    broadcaster = RedisBroadcaster("redis://unused", client=client)

    await broadcaster.publish("rollup:org-1", "hello")
    await broadcaster.close()
    await broadcaster.publish("rollup:org-1", "after close")

    assert client.published == [("rollup:org-1", "hello")]
    assert client.closed


# ---------------------------------------------------------------------------
# Projection
# ---------------------------------------------------------------------------


def test_projection_dedupes_redelivered_events():
    started = envelope(RollupEventType.EXECUTION_STARTED, "ev-1", executionId="e1", attempt=2)
    progress = envelope(
        RollupEventType.EXECUTION_PROGRESS, "ev-2", phase="matching", overallProgress=40
    )
    failed = envelope(
        RollupEventType.EXECUTION_FAILED,
        "ev-3",
        error={"code": RollupErrorCode.GRAPH_SOURCE_UNAVAILABLE},
        phase="matching",
        willRetry=True,
    )
    retrying = envelope(RollupEventType.EXECUTION_RETRYING, "ev-4", executionId="e2")

    state = project_execution([started, progress, progress, failed, started, retrying])

    assert state.events_applied == 4
    assert state.execution_id == "e1"
    assert state.attempt == 2
    assert state.status == ExecutionStatus.FAILED
    assert state.phase == ExecutionPhase.MATCHING
    assert state.progress == 40
    assert state.error_code == RollupErrorCode.GRAPH_SOURCE_UNAVAILABLE
    assert state.will_retry is True
    assert state.next_execution_id == "e2"


def test_projection_of_cancelled_execution():
    state = project_execution(
        [
            envelope(RollupEventType.EXECUTION_STARTED, "ev-1", executionId="e1"),
            envelope(RollupEventType.MERGE_STARTED, "ev-2"),
            envelope(RollupEventType.EXECUTION_CANCELLED, "ev-3", reason="stop"),
        ]
    )

    assert state.status == ExecutionStatus.FAILED
    assert state.phase == ExecutionPhase.MERGING
    assert state.error_code == RollupErrorCode.EXECUTION_CANCELLED
    assert state.will_retry is False


@pytest.mark.asyncio
async def test_replay_reads_the_execution_stream(publisher, session_factory):
    await publisher.execution_started(
        tenant_id=TENANT, rollup_id="r1", execution_id="e1", repository_ids=[], scan_ids=[]
    )
    await publisher.progress(
        tenant_id=TENANT, rollup_id="r1", execution_id="e1", phase=ExecutionPhase.MATCHING, percentage=100
    )
    await publisher.execution_retrying(
        tenant_id=TENANT,
        rollup_id="r1",
        execution_id="e2",
        previous_execution_id="e1",
        attempt=2,
        max_attempts=3,
        previous_error={},
        delay_ms=100,
    )

    with session_factory() as session:
        state = replay_execution(session, "e1")
        other = replay_execution(session, "e2")

    assert state.progress == 50
    assert state.next_execution_id == "e2"
    assert other.events_applied == 0
