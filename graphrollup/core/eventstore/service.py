"""
Event Store Service for appending and replaying rollup events
"""

from __future__ import annotations
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session
from sqlalchemy import select, func, text
from .models import RollupEventRecord


def next_seq(session: Session, stream_id: str) -> int:
    """Get the next sequence number for a stream.

    On PostgreSQL an advisory lock serializes writers of the same stream,
    including the very first insert. Other backends rely on the unique
    (stream_id, seq) index.
    """
    if session.get_bind().dialect.name == "postgresql":
        import hashlib

        stream_hash = int(hashlib.md5(stream_id.encode()).hexdigest()[:8], 16)
        # Released automatically at transaction end
        session.execute(
            text("SELECT pg_advisory_xact_lock(:lock_id)"), {"lock_id": stream_hash}
        )

    last = session.execute(
        select(func.max(RollupEventRecord.seq)).where(
            RollupEventRecord.stream_id == stream_id
        )
    ).scalar()
    return 1 if last is None else int(last) + 1


def get_by_event_id(session: Session, event_id: str) -> Optional[RollupEventRecord]:
    return session.execute(
        select(RollupEventRecord).where(RollupEventRecord.event_id == event_id)
    ).scalar_one_or_none()


def append_event(
    session: Session,
    *,
    stream_id: str,
    event_id: str,
    type: str,
    tenant_id: str,
    payload: dict,
    metadata: dict,
    occurred_at: datetime,
    schema_version: int = 1,
) -> RollupEventRecord:
    """
    Append an event to the stream's log with a monotonic sequence number.

    Appending an event id that is already stored returns the stored record
    unchanged, so redelivered events are recorded once.

    Args:
        session: Database session
        stream_id: Execution id or rollup id the event belongs to
        event_id: Globally unique event identifier
        type: Event type (e.g., 'rollup.execution.started')
        tenant_id: Owning tenant
        payload: Event payload data
        metadata: Envelope metadata (correlation, causation, source)
        occurred_at: Event timestamp from the envelope

    Returns:
        The stored RollupEventRecord
    """
    existing = get_by_event_id(session, event_id)
    if existing is not None:
        return existing

    seq = next_seq(session, stream_id)
    evt = RollupEventRecord(
        stream_id=stream_id,
        seq=seq,
        event_id=event_id,
        type=type,
        tenant_id=tenant_id,
        payload=payload,
        event_metadata=metadata,
        schema_version=schema_version,
        occurred_at=occurred_at,
        correlation_id=metadata.get("correlationId"),
    )
    session.add(evt)
    session.flush()  # Get the ID immediately
    return evt


def replay(
    session: Session,
    *,
    stream_id: str,
    since_seq: int | None = None,
    limit: int = 500,
) -> list[RollupEventRecord]:
    """
    Replay events for a stream in sequence order.

    Args:
        session: Database session
        stream_id: Stream identifier
        since_seq: Only return events with seq > since_seq
        limit: Maximum number of events to return
    """
    q = select(RollupEventRecord).where(RollupEventRecord.stream_id == stream_id)
    if since_seq is not None:
        q = q.where(RollupEventRecord.seq > since_seq)
    q = q.order_by(RollupEventRecord.seq.asc()).limit(limit)
    rows = session.execute(q).scalars().all()
    return list(rows)


def get_stream_event_count(session: Session, stream_id: str) -> int:
    """Get the total number of events for a stream"""
    count = session.execute(
        select(func.count(RollupEventRecord.id)).where(
            RollupEventRecord.stream_id == stream_id
        )
    ).scalar()
    return count or 0
