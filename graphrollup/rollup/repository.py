"""
Rollup persistence.

``RollupRepository`` maps configurations, executions and stored aggregate
graphs onto the SQLAlchemy tables. Every public method runs in its own
session and transaction. Configuration updates are optimistically locked:
the row is only written when its stored version still equals the version
the caller read, and the write increments it by exactly one.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from graphrollup.core.db import safe_rollback
from graphrollup.database.models.rollup import (
    RollupConfigurationRecord,
    RollupExecutionRecord,
    RollupMergedGraphRecord,
)

from .errors import (
    RollupError,
    RollupExecutionInProgressError,
    RollupExecutionNotFoundError,
    RollupNotFoundError,
    RollupStorageError,
    RollupVersionConflictError,
)
from .graph import RollupGraph
from .types import (
    TERMINAL_EXECUTION_STATUSES,
    ExecutionPhase,
    ExecutionStatus,
    MatchResult,
    MergedNode,
    RollupConfiguration,
    RollupExecution,
    RollupExecutionStats,
    RollupListQuery,
    RollupStatus,
    utcnow,
)

logger = logging.getLogger(__name__)

_SORT_COLUMNS = {
    "name": RollupConfigurationRecord.name,
    "createdAt": RollupConfigurationRecord.created_at,
    "updatedAt": RollupConfigurationRecord.updated_at,
    "lastExecutedAt": RollupConfigurationRecord.last_executed_at,
}
_ACTIVE_EXECUTION_STATUSES = (ExecutionStatus.PENDING.value, ExecutionStatus.RUNNING.value)


def _config_columns(config: RollupConfiguration) -> Dict:
    data = config.model_dump(mode="json", by_alias=True)
    return {
        "tenant_id": config.tenant_id,
        "name": config.name,
        "description": config.description,
        "status": config.status.value,
        "repository_ids": list(config.repository_ids),
        "scan_ids": list(config.scan_ids) if config.scan_ids is not None else None,
        "matchers": data["matchers"],
        "include_node_types": config.include_node_types,
        "exclude_node_types": config.exclude_node_types,
        "preserve_edge_types": config.preserve_edge_types,
        "merge_options": data["mergeOptions"],
        "schedule": data["schedule"],
        "created_by": config.created_by,
        "updated_by": config.updated_by,
        "created_at": config.created_at,
        "updated_at": config.updated_at,
        "last_executed_at": config.last_executed_at,
    }


def config_from_record(row: RollupConfigurationRecord) -> RollupConfiguration:
    return RollupConfiguration.model_validate(
        {
            "id": row.id,
            "tenantId": row.tenant_id,
            "name": row.name,
            "description": row.description,
            "status": row.status,
            "repositoryIds": row.repository_ids,
            "scanIds": row.scan_ids,
            "matchers": row.matchers,
            "includeNodeTypes": row.include_node_types,
            "excludeNodeTypes": row.exclude_node_types,
            "preserveEdgeTypes": row.preserve_edge_types,
            "mergeOptions": row.merge_options,
            "schedule": row.schedule,
            "version": row.version,
            "createdBy": row.created_by,
            "updatedBy": row.updated_by,
            "createdAt": row.created_at,
            "updatedAt": row.updated_at,
            "lastExecutedAt": row.last_executed_at,
        }
    )


def _execution_columns(execution: RollupExecution) -> Dict:
    return {
        "rollup_id": execution.rollup_id,
        "tenant_id": execution.tenant_id,
        "status": execution.status.value,
        "phase": execution.phase.value if execution.phase else None,
        "scan_ids": list(execution.scan_ids),
        "stats": execution.stats.to_dict() if execution.stats else None,
        "matches": (
            [m.to_dict() for m in execution.matches]
            if execution.matches is not None
            else None
        ),
        "merged_nodes": (
            [n.to_dict() for n in execution.merged_nodes]
            if execution.merged_nodes is not None
            else None
        ),
        "progress": execution.progress,
        "attempt": execution.attempt,
        "retry_of": execution.retry_of,
        "error_code": execution.error_code,
        "error_message": execution.error_message,
        "error_details": execution.error_details,
        "triggered_by": execution.triggered_by,
        "created_at": execution.created_at,
        "started_at": execution.started_at,
        "completed_at": execution.completed_at,
    }


def execution_from_record(row: RollupExecutionRecord) -> RollupExecution:
    return RollupExecution(
        id=row.id,
        rollup_id=row.rollup_id,
        tenant_id=row.tenant_id,
        status=ExecutionStatus(row.status),
        phase=ExecutionPhase(row.phase) if row.phase else None,
        scan_ids=list(row.scan_ids or []),
        stats=RollupExecutionStats.from_dict(row.stats) if row.stats else None,
        matches=(
            [MatchResult.from_dict(m) for m in row.matches]
            if row.matches is not None
            else None
        ),
        merged_nodes=(
            [MergedNode.from_dict(n) for n in row.merged_nodes]
            if row.merged_nodes is not None
            else None
        ),
        progress=row.progress,
        attempt=row.attempt,
        retry_of=row.retry_of,
        error_code=row.error_code,
        error_message=row.error_message,
        error_details=row.error_details,
        triggered_by=row.triggered_by,
        created_at=row.created_at,
        started_at=row.started_at,
        completed_at=row.completed_at,
    )


class RollupRepository:
    """Persistence for configurations, executions and merged graphs."""

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    @contextmanager
    def _session(self, operation: str) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except RollupError:
            safe_rollback(session, logger, operation)
            raise
        except SQLAlchemyError as e:
            safe_rollback(session, logger, operation)
            logger.error(f"Rollup storage failure during {operation}: {e}")
            raise RollupStorageError(
                f"Storage failure during {operation}", details={"operation": operation}
            ) from e
        finally:
            session.close()

    # ------------------------------------------------------------------
    # Configurations
    # ------------------------------------------------------------------

    def create_config(self, config: RollupConfiguration) -> RollupConfiguration:
        with self._session("create rollup") as session:
            session.add(
                RollupConfigurationRecord(
                    id=config.id, version=config.version, **_config_columns(config)
                )
            )
        return config

    def _get_config_row(
        self, session: Session, tenant_id: str, rollup_id: str
    ) -> RollupConfigurationRecord:
        row = session.get(RollupConfigurationRecord, rollup_id)
        if row is None or row.tenant_id != tenant_id:
            raise RollupNotFoundError(rollup_id)
        return row

    def get_config(self, tenant_id: str, rollup_id: str) -> RollupConfiguration:
        with self._session("get rollup") as session:
            return config_from_record(self._get_config_row(session, tenant_id, rollup_id))

    def list_configs(
        self, tenant_id: str, query: RollupListQuery
    ) -> Tuple[List[RollupConfiguration], int]:
        stmt = select(RollupConfigurationRecord).where(
            RollupConfigurationRecord.tenant_id == tenant_id
        )
        if query.status is not None:
            stmt = stmt.where(RollupConfigurationRecord.status == query.status.value)
        if query.search:
            stmt = stmt.where(
                func.lower(RollupConfigurationRecord.name).contains(query.search.lower())
            )
        column = _SORT_COLUMNS[query.sort_by]
        stmt = stmt.order_by(
            column.asc() if query.sort_order == "asc" else column.desc(),
            RollupConfigurationRecord.id.asc(),
        )
        with self._session("list rollups") as session:
            rows = session.execute(stmt).scalars().all()
            configs = [config_from_record(row) for row in rows]
        # Repository membership lives in a JSON column; filter portably here
        if query.repository_id:
            configs = [c for c in configs if query.repository_id in c.repository_ids]
        start = (query.page - 1) * query.page_size
        return configs[start : start + query.page_size], len(configs)

    def update_config(
        self, config: RollupConfiguration, expected_version: int
    ) -> RollupConfiguration:
        """Write ``config`` if the stored version is still ``expected_version``."""
        columns = _config_columns(config)
        columns.pop("created_at")
        columns.pop("created_by")
        with self._session("update rollup") as session:
            result = session.execute(
                update(RollupConfigurationRecord)
                .where(
                    RollupConfigurationRecord.id == config.id,
                    RollupConfigurationRecord.tenant_id == config.tenant_id,
                    RollupConfigurationRecord.version == expected_version,
                    RollupConfigurationRecord.status != RollupStatus.EXECUTING.value,
                )
                .values(version=RollupConfigurationRecord.version + 1, **columns)
            )
            if result.rowcount != 1:
                row = self._get_config_row(session, config.tenant_id, config.id)
                if row.version != expected_version:
                    raise RollupVersionConflictError(config.id, expected_version, row.version)
                raise RollupExecutionInProgressError(config.id, row.status)
        return config.model_copy(update={"version": expected_version + 1})

    def set_status(
        self,
        tenant_id: str,
        rollup_id: str,
        status: RollupStatus,
        *,
        unless: Optional[RollupStatus] = None,
        last_executed_at: Optional[datetime] = None,
    ) -> bool:
        """
        Lifecycle status transition (does not bump the version).

        With ``unless`` the write only happens when the current status
        differs from it, which makes claiming ``executing`` atomic.
        """
        values: Dict = {"status": status.value}
        if last_executed_at is not None:
            values["last_executed_at"] = last_executed_at
        stmt = update(RollupConfigurationRecord).where(
            RollupConfigurationRecord.id == rollup_id,
            RollupConfigurationRecord.tenant_id == tenant_id,
        )
        if unless is not None:
            stmt = stmt.where(RollupConfigurationRecord.status != unless.value)
        with self._session("set rollup status") as session:
            result = session.execute(stmt.values(**values))
            if result.rowcount != 1:
                self._get_config_row(session, tenant_id, rollup_id)
                return False
        return True

    def delete_config(self, tenant_id: str, rollup_id: str) -> None:
        with self._session("delete rollup") as session:
            self._get_config_row(session, tenant_id, rollup_id)
            session.execute(
                delete(RollupMergedGraphRecord).where(
                    RollupMergedGraphRecord.rollup_id == rollup_id
                )
            )
            session.execute(
                delete(RollupExecutionRecord).where(
                    RollupExecutionRecord.rollup_id == rollup_id
                )
            )
            session.execute(
                delete(RollupConfigurationRecord).where(
                    RollupConfigurationRecord.id == rollup_id
                )
            )

    def list_scan_triggered(self, tenant_id: str, repository_id: str) -> List[RollupConfiguration]:
        """Active rollups over ``repository_id`` that run when a scan completes."""
        stmt = select(RollupConfigurationRecord).where(
            RollupConfigurationRecord.tenant_id == tenant_id,
            RollupConfigurationRecord.status.in_(
                [RollupStatus.ACTIVE.value, RollupStatus.COMPLETED.value, RollupStatus.FAILED.value]
            ),
        )
        with self._session("list scan-triggered rollups") as session:
            configs = [config_from_record(r) for r in session.execute(stmt).scalars().all()]
        return [
            c
            for c in configs
            if repository_id in c.repository_ids
            and c.schedule is not None
            and c.schedule.on_scan_complete
        ]

    # ------------------------------------------------------------------
    # Executions
    # ------------------------------------------------------------------

    def create_execution(self, execution: RollupExecution) -> RollupExecution:
        with self._session("create execution") as session:
            session.add(RollupExecutionRecord(id=execution.id, **_execution_columns(execution)))
        return execution

    def get_execution(
        self, execution_id: str, tenant_id: Optional[str] = None
    ) -> RollupExecution:
        with self._session("get execution") as session:
            row = session.get(RollupExecutionRecord, execution_id)
            if row is None or (tenant_id is not None and row.tenant_id != tenant_id):
                raise RollupExecutionNotFoundError(execution_id)
            return execution_from_record(row)

    def update_execution(self, execution: RollupExecution) -> RollupExecution:
        """Persist the execution's current state; terminal records are immutable."""
        with self._session("update execution") as session:
            row = session.get(RollupExecutionRecord, execution.id)
            if row is None:
                raise RollupExecutionNotFoundError(execution.id)
            if ExecutionStatus(row.status) in TERMINAL_EXECUTION_STATUSES:
                raise RollupStorageError(
                    f"Execution {execution.id} is {row.status} and can no longer change",
                    details={"executionId": execution.id, "status": row.status},
                    retryable=False,
                )
            for key, value in _execution_columns(execution).items():
                setattr(row, key, value)
        return execution

    def list_executions(
        self, tenant_id: str, rollup_id: str, limit: int = 50
    ) -> List[RollupExecution]:
        stmt = (
            select(RollupExecutionRecord)
            .where(
                RollupExecutionRecord.tenant_id == tenant_id,
                RollupExecutionRecord.rollup_id == rollup_id,
            )
            .order_by(RollupExecutionRecord.created_at.desc(), RollupExecutionRecord.id)
            .limit(limit)
        )
        with self._session("list executions") as session:
            return [execution_from_record(r) for r in session.execute(stmt).scalars().all()]

    def find_active_execution(self, rollup_id: str) -> Optional[RollupExecution]:
        stmt = (
            select(RollupExecutionRecord)
            .where(
                RollupExecutionRecord.rollup_id == rollup_id,
                RollupExecutionRecord.status.in_(_ACTIVE_EXECUTION_STATUSES),
            )
            .order_by(RollupExecutionRecord.created_at.desc())
            .limit(1)
        )
        with self._session("find active execution") as session:
            row = session.execute(stmt).scalars().first()
            return execution_from_record(row) if row is not None else None

    # ------------------------------------------------------------------
    # Merged graphs
    # ------------------------------------------------------------------

    def save_merged_graph(
        self,
        tenant_id: str,
        rollup_id: str,
        graph: RollupGraph,
        repository_names: Optional[Dict[str, str]] = None,
    ) -> None:
        data = graph.to_dict()
        with self._session("save merged graph") as session:
            session.merge(
                RollupMergedGraphRecord(
                    execution_id=graph.execution_id,
                    rollup_id=rollup_id,
                    tenant_id=tenant_id,
                    merged_nodes=data["mergedNodes"],
                    passthrough_nodes=data["passthroughNodes"],
                    edges=data["edges"],
                    repository_names=repository_names,
                    created_at=utcnow(),
                )
            )

    def load_merged_graph(
        self, execution_id: str
    ) -> Optional[Tuple[RollupGraph, Dict[str, str]]]:
        with self._session("load merged graph") as session:
            row = session.get(RollupMergedGraphRecord, execution_id)
            if row is None:
                return None
            graph = RollupGraph.from_dict(
                {
                    "executionId": row.execution_id,
                    "mergedNodes": row.merged_nodes,
                    "passthroughNodes": row.passthrough_nodes,
                    "edges": row.edges,
                }
            )
            return graph, dict(row.repository_names or {})

    def delete_merged_graphs(self, rollup_id: str, keep: Sequence[str] = ()) -> int:
        """Drop stored graphs of a rollup except the listed executions."""
        stmt = delete(RollupMergedGraphRecord).where(
            RollupMergedGraphRecord.rollup_id == rollup_id
        )
        if keep:
            stmt = stmt.where(RollupMergedGraphRecord.execution_id.not_in(list(keep)))
        with self._session("delete merged graphs") as session:
            return session.execute(stmt).rowcount or 0
