"""
Event Store Models for rollup lifecycle replay
"""

from __future__ import annotations
from typing import Optional
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import Integer, String, DateTime, JSON, Index
from datetime import datetime, timezone
from graphrollup.core.db import Base


def utcnow() -> datetime:
    """Get current UTC timestamp"""
    return datetime.now(tz=timezone.utc)


class RollupEventRecord(Base):
    """
    Append-only event log per stream for replay functionality.
    A stream is an execution id (lifecycle events) or a rollup id
    (configuration events); each has its own monotonic sequence.
    """

    __tablename__ = "rollup_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    stream_id: Mapped[str] = mapped_column(String(128), index=True, nullable=False)
    seq: Mapped[int] = mapped_column(
        Integer, index=True, nullable=False
    )  # monotonic per stream
    event_id: Mapped[str] = mapped_column(String(64), nullable=False)
    type: Mapped[str] = mapped_column(String(64), nullable=False)
    tenant_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)
    event_metadata: Mapped[dict] = mapped_column("metadata", JSON, nullable=False)
    schema_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    occurred_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, index=True, nullable=False
    )
    correlation_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    __table_args__ = (
        # Ensure monotonic uniqueness per stream
        Index("ix_rollup_events_stream_seq", "stream_id", "seq", unique=True),
        # Consumers are idempotent on event id; so is the log
        Index("ix_rollup_events_event_id", "event_id", unique=True),
    )
