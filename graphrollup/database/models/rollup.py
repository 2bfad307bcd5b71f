"""
Rollup Database Models.

Persistent storage for rollup configurations, their executions and the
aggregate graph each completed execution produced.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from graphrollup.core.db import Base
from graphrollup.core.eventstore.models import utcnow


class RollupConfigurationRecord(Base):
    """A cross-repository rollup definition (optimistically locked on version)"""

    __tablename__ = "rollup_configurations"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="draft")

    repository_ids: Mapped[List[str]] = mapped_column(JSON, nullable=False)
    scan_ids: Mapped[Optional[List[str]]] = mapped_column(JSON, nullable=True)
    matchers: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, nullable=False)
    include_node_types: Mapped[Optional[List[str]]] = mapped_column(JSON, nullable=True)
    exclude_node_types: Mapped[Optional[List[str]]] = mapped_column(JSON, nullable=True)
    preserve_edge_types: Mapped[Optional[List[str]]] = mapped_column(JSON, nullable=True)
    merge_options: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)
    schedule: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_by: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    updated_by: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    last_executed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    __table_args__ = (
        Index("ix_rollup_configurations_tenant_status", "tenant_id", "status"),
    )


class RollupExecutionRecord(Base):
    """One run of a rollup; immutable once completed or failed"""

    __tablename__ = "rollup_executions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    rollup_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("rollup_configurations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending")
    phase: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    scan_ids: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    stats: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    matches: Mapped[Optional[List[Dict[str, Any]]]] = mapped_column(JSON, nullable=True)
    merged_nodes: Mapped[Optional[List[Dict[str, Any]]]] = mapped_column(
        JSON, nullable=True
    )
    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    retry_of: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    error_code: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_details: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    triggered_by: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    started_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    __table_args__ = (
        Index("ix_rollup_executions_rollup_created", "rollup_id", "created_at"),
    )


class RollupMergedGraphRecord(Base):
    """Aggregate node/edge set stored per completed execution"""

    __tablename__ = "rollup_merged_graphs"

    execution_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("rollup_executions.id", ondelete="CASCADE"),
        primary_key=True,
    )
    rollup_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    merged_nodes: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, nullable=False)
    passthrough_nodes: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, nullable=False)
    edges: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, nullable=False)
    repository_names: Mapped[Optional[Dict[str, str]]] = mapped_column(
        JSON, nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
