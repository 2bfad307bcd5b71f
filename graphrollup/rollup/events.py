"""
Rollup lifecycle events.

Every lifecycle transition is published as an ``EventEnvelope``: appended to
the per-stream event log (stream = execution id, or rollup id for
configuration events) and broadcast as JSON on ``<prefix><tenant_id>``.
Delivery is at-least-once; consumers dedupe on ``eventId``.

Persisted execution state can be rebuilt from the log with
``project_execution``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

import structlog
from pydantic import Field
from sqlalchemy.orm import Session

from graphrollup.core.eventstore import service as eventstore
from graphrollup.core.eventstore.models import RollupEventRecord
from graphrollup.infra.broadcast.base import Broadcast

from .errors import RollupErrorCode
from .types import PHASE_ORDER, CamelModel, ExecutionPhase, ExecutionStatus, new_id, utcnow

logger = structlog.get_logger(__name__)

EVENT_SOURCE = "graphrollup"


class RollupEventType(str, Enum):
    CONFIGURATION_CREATED = "rollup.configuration.created"
    CONFIGURATION_UPDATED = "rollup.configuration.updated"
    CONFIGURATION_DELETED = "rollup.configuration.deleted"
    EXECUTION_STARTED = "rollup.execution.started"
    EXECUTION_PROGRESS = "rollup.execution.progress"
    EXECUTION_COMPLETED = "rollup.execution.completed"
    EXECUTION_FAILED = "rollup.execution.failed"
    EXECUTION_CANCELLED = "rollup.execution.cancelled"
    EXECUTION_RETRYING = "rollup.execution.retrying"
    MATCHING_STARTED = "rollup.matching.started"
    MATCHING_COMPLETED = "rollup.matching.completed"
    MERGE_STARTED = "rollup.merge.started"
    MERGE_COMPLETED = "rollup.merge.completed"
    MERGE_CONFLICT = "rollup.merge.conflict"
    BLAST_RADIUS_CALCULATED = "rollup.blast_radius.calculated"


class EventMetadata(CamelModel):
    correlation_id: Optional[str] = None
    causation_id: Optional[str] = None
    triggered_by: Optional[str] = None
    source: str = EVENT_SOURCE
    context: Optional[Dict[str, Any]] = None


class EventEnvelope(CamelModel):
    type: RollupEventType
    event_id: str = Field(default_factory=new_id)
    tenant_id: str
    timestamp: datetime = Field(default_factory=utcnow)
    version: int = 1
    payload: Dict[str, Any] = Field(default_factory=dict)
    metadata: EventMetadata = Field(default_factory=EventMetadata)

    @classmethod
    def from_record(cls, record: RollupEventRecord) -> "EventEnvelope":
        return cls(
            type=RollupEventType(record.type),
            event_id=record.event_id,
            tenant_id=record.tenant_id,
            timestamp=record.occurred_at,
            version=record.schema_version,
            payload=record.payload,
            metadata=EventMetadata.model_validate(record.event_metadata or {}),
        )


class PhaseTracker:
    """
    Keeps one execution's progress stream well-ordered: phases only move
    forward and percentages never decrease within a phase.
    """

    def __init__(self) -> None:
        self.phase: Optional[ExecutionPhase] = None
        self.percentage = 0

    def enter(self, phase: ExecutionPhase) -> None:
        if self.phase is not None:
            current = PHASE_ORDER.index(self.phase)
            requested = PHASE_ORDER.index(phase)
            if requested < current:
                raise ValueError(
                    f"Phase {phase.value} cannot follow {self.phase.value}"
                )
            if requested == current:
                return
        self.phase = phase
        self.percentage = 0

    def clamp(self, percentage: float) -> int:
        value = int(max(0, min(100, percentage)))
        self.percentage = max(self.percentage, value)
        return self.percentage

    @property
    def overall(self) -> int:
        """Whole-execution percentage; each phase is an equal share."""
        if self.phase is None:
            return 0
        index = PHASE_ORDER.index(self.phase)
        return (index * 100 + self.percentage) // len(PHASE_ORDER)


class RollupEventPublisher:
    """
    Appends lifecycle events to the event log and broadcasts them.

    Publishing is fire-and-forget from the caller's point of view: storage
    and broadcast failures are logged and never raised. Progress and phase
    ordering errors, however, are caller bugs and do raise.
    """

    def __init__(
        self,
        broadcaster: Optional[Broadcast] = None,
        session_factory: Optional[Callable[[], Session]] = None,
        channel_prefix: str = "rollup:",
        source: str = EVENT_SOURCE,
    ) -> None:
        self._broadcaster = broadcaster
        self._session_factory = session_factory
        self._channel_prefix = channel_prefix
        self._source = source
        self._trackers: Dict[str, PhaseTracker] = {}

    def channel_for(self, tenant_id: str) -> str:
        return f"{self._channel_prefix}{tenant_id}"

    def tracker(self, execution_id: str) -> PhaseTracker:
        tracker = self._trackers.get(execution_id)
        if tracker is None:
            tracker = self._trackers[execution_id] = PhaseTracker()
        return tracker

    def release(self, execution_id: str) -> None:
        self._trackers.pop(execution_id, None)

    async def close(self) -> None:
        if self._broadcaster is not None:
            await self._broadcaster.close()

    async def publish(
        self,
        type: RollupEventType,
        tenant_id: str,
        payload: Dict[str, Any],
        *,
        stream_id: str,
        correlation_id: Optional[str] = None,
        causation_id: Optional[str] = None,
        triggered_by: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> EventEnvelope:
        envelope = EventEnvelope(
            type=type,
            tenant_id=tenant_id,
            payload=payload,
            metadata=EventMetadata(
                correlation_id=correlation_id,
                causation_id=causation_id,
                triggered_by=triggered_by,
                source=self._source,
                context=context,
            ),
        )
        self._store(stream_id, envelope)
        await self._broadcast(envelope)
        return envelope

    def _store(self, stream_id: str, envelope: EventEnvelope) -> None:
        if self._session_factory is None:
            return
        session = self._session_factory()
        try:
            eventstore.append_event(
                session,
                stream_id=stream_id,
                event_id=envelope.event_id,
                type=envelope.type.value,
                tenant_id=envelope.tenant_id,
                payload=envelope.model_dump(mode="json")["payload"],
                metadata=envelope.metadata.to_json_dict(),
                occurred_at=envelope.timestamp,
                schema_version=envelope.version,
            )
            session.commit()
        except Exception as e:
            session.rollback()
            logger.error(
                "rollup_events.store.error",
                event_type=envelope.type.value,
                event_id=envelope.event_id,
                error=str(e),
            )
        finally:
            session.close()

    async def _broadcast(self, envelope: EventEnvelope) -> None:
        if self._broadcaster is None:
            return
        try:
            await self._broadcaster.publish(
                self.channel_for(envelope.tenant_id),
                envelope.model_dump_json(by_alias=True),
            )
        except Exception as e:
            logger.warning(
                "rollup_events.broadcast.error",
                event_type=envelope.type.value,
                event_id=envelope.event_id,
                error=str(e),
            )

    # ------------------------------------------------------------------
    # Execution lifecycle helpers
    # ------------------------------------------------------------------

    async def execution_started(
        self,
        *,
        tenant_id: str,
        rollup_id: str,
        execution_id: str,
        repository_ids: List[str],
        scan_ids: List[str],
        attempt: int = 1,
        triggered_by: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> EventEnvelope:
        return await self.publish(
            RollupEventType.EXECUTION_STARTED,
            tenant_id,
            {
                "rollupId": rollup_id,
                "executionId": execution_id,
                "repositoryIds": repository_ids,
                "scanIds": scan_ids,
                "attempt": attempt,
            },
            stream_id=execution_id,
            triggered_by=triggered_by,
            correlation_id=correlation_id or rollup_id,
        )

    async def progress(
        self,
        *,
        tenant_id: str,
        rollup_id: str,
        execution_id: str,
        phase: ExecutionPhase,
        percentage: float,
        message: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> EventEnvelope:
        tracker = self.tracker(execution_id)
        tracker.enter(phase)
        phase_progress = tracker.clamp(percentage)
        payload: Dict[str, Any] = {
            "rollupId": rollup_id,
            "executionId": execution_id,
            "phase": phase.value,
            "percentage": phase_progress,
            "overallProgress": tracker.overall,
        }
        if message:
            payload["message"] = message
        return await self.publish(
            RollupEventType.EXECUTION_PROGRESS,
            tenant_id,
            payload,
            stream_id=execution_id,
            correlation_id=correlation_id or rollup_id,
        )

    async def execution_completed(
        self,
        *,
        tenant_id: str,
        rollup_id: str,
        execution_id: str,
        stats: Dict[str, Any],
        correlation_id: Optional[str] = None,
    ) -> EventEnvelope:
        self.release(execution_id)
        return await self.publish(
            RollupEventType.EXECUTION_COMPLETED,
            tenant_id,
            {"rollupId": rollup_id, "executionId": execution_id, "stats": stats},
            stream_id=execution_id,
            correlation_id=correlation_id or rollup_id,
        )

    async def execution_failed(
        self,
        *,
        tenant_id: str,
        rollup_id: str,
        execution_id: str,
        error: Dict[str, Any],
        phase: Optional[ExecutionPhase],
        will_retry: bool,
        attempt: int,
        correlation_id: Optional[str] = None,
    ) -> EventEnvelope:
        self.release(execution_id)
        return await self.publish(
            RollupEventType.EXECUTION_FAILED,
            tenant_id,
            {
                "rollupId": rollup_id,
                "executionId": execution_id,
                "error": error,
                "phase": phase.value if phase else None,
                "willRetry": will_retry,
                "attempt": attempt,
            },
            stream_id=execution_id,
            correlation_id=correlation_id or rollup_id,
        )

    async def execution_cancelled(
        self,
        *,
        tenant_id: str,
        rollup_id: str,
        execution_id: str,
        reason: Optional[str],
        cancelled_by: Optional[str],
        progress_at_cancellation: int,
        phase: Optional[ExecutionPhase],
        correlation_id: Optional[str] = None,
    ) -> EventEnvelope:
        self.release(execution_id)
        return await self.publish(
            RollupEventType.EXECUTION_CANCELLED,
            tenant_id,
            {
                "rollupId": rollup_id,
                "executionId": execution_id,
                "reason": reason,
                "cancelledBy": cancelled_by,
                "progressAtCancellation": progress_at_cancellation,
                "phase": phase.value if phase else None,
            },
            stream_id=execution_id,
            triggered_by=cancelled_by,
            correlation_id=correlation_id or rollup_id,
        )

    async def execution_retrying(
        self,
        *,
        tenant_id: str,
        rollup_id: str,
        execution_id: str,
        previous_execution_id: str,
        attempt: int,
        max_attempts: int,
        previous_error: Dict[str, Any],
        delay_ms: int,
        correlation_id: Optional[str] = None,
    ) -> EventEnvelope:
        # Recorded on the failed execution's stream; the new id links them
        return await self.publish(
            RollupEventType.EXECUTION_RETRYING,
            tenant_id,
            {
                "rollupId": rollup_id,
                "executionId": execution_id,
                "previousExecutionId": previous_execution_id,
                "attempt": attempt,
                "maxAttempts": max_attempts,
                "previousError": previous_error,
                "delayMs": delay_ms,
            },
            stream_id=previous_execution_id,
            causation_id=previous_execution_id,
            correlation_id=correlation_id or rollup_id,
        )


# ---------------------------------------------------------------------------
# Projection
# ---------------------------------------------------------------------------


@dataclass
class ExecutionProjection:
    execution_id: Optional[str] = None
    status: ExecutionStatus = ExecutionStatus.PENDING
    phase: Optional[ExecutionPhase] = None
    progress: int = 0
    attempt: int = 1
    error_code: Optional[str] = None
    will_retry: bool = False
    next_execution_id: Optional[str] = None
    events_applied: int = 0
    seen_event_ids: set = field(default_factory=set, repr=False)


def project_execution(
    events: Iterable[Union[EventEnvelope, RollupEventRecord]],
) -> ExecutionProjection:
    """Fold an execution's event stream into its current state.

    Redelivered events (same ``eventId``) are applied once.
    """
    state = ExecutionProjection()
    for item in events:
        event = item if isinstance(item, EventEnvelope) else EventEnvelope.from_record(item)
        if event.event_id in state.seen_event_ids:
            continue
        state.seen_event_ids.add(event.event_id)
        state.events_applied += 1
        payload = event.payload

        if event.type == RollupEventType.EXECUTION_STARTED:
            state.execution_id = payload.get("executionId")
            state.status = ExecutionStatus.RUNNING
            state.attempt = payload.get("attempt", 1)
            state.progress = 0
        elif event.type == RollupEventType.EXECUTION_PROGRESS:
            state.phase = ExecutionPhase(payload["phase"])
            state.progress = max(state.progress, payload.get("overallProgress", 0))
        elif event.type == RollupEventType.MATCHING_STARTED:
            state.phase = ExecutionPhase.MATCHING
        elif event.type == RollupEventType.MERGE_STARTED:
            state.phase = ExecutionPhase.MERGING
        elif event.type == RollupEventType.EXECUTION_COMPLETED:
            state.status = ExecutionStatus.COMPLETED
            state.progress = 100
        elif event.type == RollupEventType.EXECUTION_FAILED:
            state.status = ExecutionStatus.FAILED
            state.error_code = (payload.get("error") or {}).get("code")
            state.will_retry = bool(payload.get("willRetry"))
            if payload.get("phase"):
                state.phase = ExecutionPhase(payload["phase"])
        elif event.type == RollupEventType.EXECUTION_CANCELLED:
            state.status = ExecutionStatus.FAILED
            state.error_code = RollupErrorCode.EXECUTION_CANCELLED
            state.will_retry = False
        elif event.type == RollupEventType.EXECUTION_RETRYING:
            state.will_retry = True
            state.next_execution_id = payload.get("executionId")
    return state


def replay_execution(session: Session, execution_id: str) -> ExecutionProjection:
    return project_execution(eventstore.replay(session, stream_id=execution_id, limit=10000))
