"""
Rollup service - the operations exposed to the API and background jobs.

Validation runs before anything is persisted, so a rejected create or
update leaves storage untouched. Execution is serialized per configuration:
an in-process ``asyncio.Lock`` plus the persisted ``executing`` status.
A second request fails with EXECUTION_IN_PROGRESS unless ``force`` is set,
in which case it queues behind the running execution and then polls the
persisted status until it can claim it, so executions started by other
processes are waited for too.
"""

from __future__ import annotations

import asyncio
import time
from typing import Dict, List, Optional, Tuple

import structlog

from graphrollup.core.config import Settings
from graphrollup.core.obs import metrics

from .blast_radius import BlastRadiusEngine, BlastRadiusResult
from .errors import (
    RollupBlastRadiusError,
    RollupConfigurationError,
    RollupErrorCode,
    RollupExecutionInProgressError,
    RollupExecutionNotFoundError,
    RollupExecutionNotRunningError,
    ValidationIssue,
)
from .events import RollupEventPublisher, RollupEventType
from .executor import RollupExecutor
from .repository import RollupRepository
from .types import (
    BlastRadiusQuery,
    ExecuteOptions,
    ExecutionStatus,
    MergeOptions,
    RollupConfiguration,
    RollupCreateRequest,
    RollupExecution,
    RollupListQuery,
    RollupStatus,
    RollupUpdateRequest,
    new_id,
    utcnow,
)
from .validation import validate_rollup_config

logger = structlog.get_logger(__name__)

# Statuses owned by the execution lifecycle; callers cannot set them
_SYSTEM_STATUSES = {RollupStatus.EXECUTING, RollupStatus.COMPLETED, RollupStatus.FAILED}
SCAN_TRIGGER_USER = "system:scan-completed"


class RollupService:
    def __init__(
        self,
        *,
        repository: RollupRepository,
        executor: RollupExecutor,
        publisher: RollupEventPublisher,
        blast_radius_engine: BlastRadiusEngine,
        settings: Settings,
    ) -> None:
        self.repository = repository
        self.executor = executor
        self.publisher = publisher
        self.blast_radius_engine = blast_radius_engine
        self.settings = settings
        self._locks: Dict[str, asyncio.Lock] = {}
        self._tasks: Dict[str, asyncio.Task] = {}

    def _validate(self, config: RollupConfiguration) -> None:
        validate_rollup_config(
            config,
            max_repositories=self.settings.max_repositories_per_rollup,
            max_matchers=self.settings.max_matchers_per_rollup,
        )

    def _lock_for(self, rollup_id: str) -> asyncio.Lock:
        lock = self._locks.get(rollup_id)
        if lock is None:
            lock = self._locks[rollup_id] = asyncio.Lock()
        return lock

    # ------------------------------------------------------------------
    # Configurations
    # ------------------------------------------------------------------

    async def create_rollup(
        self, tenant_id: str, user_id: Optional[str], request: RollupCreateRequest
    ) -> RollupConfiguration:
        config = RollupConfiguration(
            tenant_id=tenant_id,
            name=request.name,
            description=request.description,
            status=RollupStatus.ACTIVE if request.activate else RollupStatus.DRAFT,
            repository_ids=request.repository_ids,
            scan_ids=request.scan_ids,
            matchers=request.matchers,
            include_node_types=request.include_node_types,
            exclude_node_types=request.exclude_node_types,
            preserve_edge_types=request.preserve_edge_types,
            merge_options=request.merge_options or MergeOptions(),
            schedule=request.schedule,
            created_by=user_id,
            updated_by=user_id,
        )
        self._validate(config)
        self.repository.create_config(config)
        await self.publisher.publish(
            RollupEventType.CONFIGURATION_CREATED,
            tenant_id,
            {"rollupId": config.id, "name": config.name, "version": config.version},
            stream_id=config.id,
            triggered_by=user_id,
            correlation_id=config.id,
        )
        logger.info("rollup_service.create", tenant_id=tenant_id, rollup_id=config.id)
        return config

    def get_rollup(self, tenant_id: str, rollup_id: str) -> RollupConfiguration:
        return self.repository.get_config(tenant_id, rollup_id)

    def list_rollups(
        self, tenant_id: str, query: RollupListQuery
    ) -> Tuple[List[RollupConfiguration], int]:
        return self.repository.list_configs(tenant_id, query)

    async def update_rollup(
        self,
        tenant_id: str,
        user_id: Optional[str],
        rollup_id: str,
        request: RollupUpdateRequest,
    ) -> RollupConfiguration:
        current = self.repository.get_config(tenant_id, rollup_id)
        if current.status == RollupStatus.EXECUTING:
            active = self.repository.find_active_execution(rollup_id)
            raise RollupExecutionInProgressError(
                rollup_id, current.status.value, active.id if active else None
            )
        if request.status in _SYSTEM_STATUSES:
            raise RollupConfigurationError.from_issues(
                [
                    ValidationIssue(
                        "status",
                        RollupErrorCode.INVALID_CONFIGURATION,
                        f"Status '{request.status.value}' is set by executions only",
                    )
                ]
            )

        changes = request.model_dump(exclude_unset=True, exclude={"version"})
        candidate = RollupConfiguration.model_validate(
            {
                **current.model_dump(),
                **changes,
                "updated_by": user_id,
                "updated_at": utcnow(),
            }
        )
        self._validate(candidate)
        # Stale versions are rejected by the conditional write itself
        updated = self.repository.update_config(candidate, request.version)
        await self.publisher.publish(
            RollupEventType.CONFIGURATION_UPDATED,
            tenant_id,
            {
                "rollupId": rollup_id,
                "version": updated.version,
                "changedFields": sorted(changes),
            },
            stream_id=rollup_id,
            triggered_by=user_id,
            correlation_id=rollup_id,
        )
        logger.info(
            "rollup_service.update",
            tenant_id=tenant_id,
            rollup_id=rollup_id,
            version=updated.version,
        )
        return updated

    async def delete_rollup(
        self, tenant_id: str, user_id: Optional[str], rollup_id: str
    ) -> None:
        current = self.repository.get_config(tenant_id, rollup_id)
        if current.status == RollupStatus.EXECUTING or self._lock_for(rollup_id).locked():
            active = self.repository.find_active_execution(rollup_id)
            raise RollupExecutionInProgressError(
                rollup_id, current.status.value, active.id if active else None
            )
        for execution in self.repository.list_executions(tenant_id, rollup_id, limit=1000):
            self.blast_radius_engine.unregister(execution.id)
        self.repository.delete_config(tenant_id, rollup_id)
        self._locks.pop(rollup_id, None)
        await self.publisher.publish(
            RollupEventType.CONFIGURATION_DELETED,
            tenant_id,
            {"rollupId": rollup_id},
            stream_id=rollup_id,
            triggered_by=user_id,
            correlation_id=rollup_id,
        )
        logger.info("rollup_service.delete", tenant_id=tenant_id, rollup_id=rollup_id)

    # ------------------------------------------------------------------
    # Executions
    # ------------------------------------------------------------------

    def _timeout_for(self, options: ExecuteOptions) -> int:
        requested = options.timeout_seconds or self.settings.default_timeout_seconds
        return min(requested, self.settings.max_timeout_seconds)

    async def execute(
        self,
        tenant_id: str,
        user_id: Optional[str],
        rollup_id: str,
        options: Optional[ExecuteOptions] = None,
    ) -> RollupExecution:
        """
        Start an execution.

        Async mode returns the pending execution immediately; sync mode
        returns the terminal execution (the last retry attempt, if any).
        """
        options = options or ExecuteOptions()
        config = self.repository.get_config(tenant_id, rollup_id)
        if config.status == RollupStatus.ARCHIVED:
            raise RollupConfigurationError.from_issues(
                [
                    ValidationIssue(
                        "status",
                        RollupErrorCode.INVALID_CONFIGURATION,
                        "Archived rollups cannot be executed",
                    )
                ]
            )
        if options.scan_ids is not None and len(options.scan_ids) != len(config.repository_ids):
            raise RollupConfigurationError.from_issues(
                [
                    ValidationIssue(
                        "scanIds",
                        RollupErrorCode.INVALID_CONFIGURATION,
                        "scanIds must list one scan per repository, in repositoryIds order",
                    )
                ]
            )

        lock = self._lock_for(rollup_id)
        holding = False
        if not options.force:
            if lock.locked() or config.status == RollupStatus.EXECUTING:
                active = self.repository.find_active_execution(rollup_id)
                raise RollupExecutionInProgressError(
                    rollup_id, config.status.value, active.id if active else None
                )
            # Unlocked, so this acquires without suspending
            await lock.acquire()
            holding = True
            if not self.repository.set_status(
                tenant_id,
                rollup_id,
                RollupStatus.EXECUTING,
                unless=RollupStatus.EXECUTING,
                last_executed_at=utcnow(),
            ):
                lock.release()
                raise RollupExecutionInProgressError(rollup_id, RollupStatus.EXECUTING.value)

        execution = RollupExecution(
            id=new_id(),
            rollup_id=rollup_id,
            tenant_id=tenant_id,
            scan_ids=list(options.scan_ids or config.scan_ids or []),
            triggered_by=user_id,
        )
        try:
            self.repository.create_execution(execution)
        except Exception:
            if holding:
                self.repository.set_status(tenant_id, rollup_id, config.status)
                lock.release()
            raise
        self.executor.register(execution.id)
        logger.info(
            "rollup_service.execute",
            tenant_id=tenant_id,
            rollup_id=rollup_id,
            execution_id=execution.id,
            run_async=options.run_async,
            force=options.force,
        )

        run = self._run(tenant_id, rollup_id, execution, options, lock, holding)
        if not options.run_async:
            return await run

        task = asyncio.create_task(run, name=f"rollup-execution-{execution.id}")
        self._tasks[execution.id] = task
        task.add_done_callback(lambda t, eid=execution.id: self._task_done(eid, t))
        return execution

    def _task_done(self, execution_id: str, task: asyncio.Task) -> None:
        self._tasks.pop(execution_id, None)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(
                "rollup_service.execution_task.error",
                execution_id=execution_id,
                error=str(error),
            )

    async def _run(
        self,
        tenant_id: str,
        rollup_id: str,
        execution: RollupExecution,
        options: ExecuteOptions,
        lock: asyncio.Lock,
        holding: bool,
    ) -> RollupExecution:
        if not holding:
            # force: queue behind the running execution in this process
            await lock.acquire()
            try:
                await self._claim_forced(tenant_id, rollup_id, execution, options)
            except BaseException:
                lock.release()
                raise
        try:
            try:
                config = self.repository.get_config(tenant_id, rollup_id)
                final = await self.executor.run(
                    config, execution, options, self._timeout_for(options)
                )
            except (Exception, asyncio.CancelledError):
                self.repository.set_status(tenant_id, rollup_id, RollupStatus.FAILED)
                raise
            status = (
                RollupStatus.COMPLETED
                if final.status == ExecutionStatus.COMPLETED
                else RollupStatus.FAILED
            )
            self.repository.set_status(tenant_id, rollup_id, status)
        finally:
            lock.release()
        return final

    async def _claim_forced(
        self,
        tenant_id: str,
        rollup_id: str,
        execution: RollupExecution,
        options: ExecuteOptions,
    ) -> None:
        """
        Wait until no other process holds the ``executing`` status, then claim it.

        Gives up after the execution timeout; the queued execution is then
        marked failed with EXECUTION_IN_PROGRESS.
        """
        deadline = time.monotonic() + self._timeout_for(options)
        while not self.repository.set_status(
            tenant_id,
            rollup_id,
            RollupStatus.EXECUTING,
            unless=RollupStatus.EXECUTING,
            last_executed_at=utcnow(),
        ):
            if time.monotonic() >= deadline:
                error = RollupExecutionInProgressError(rollup_id, RollupStatus.EXECUTING.value)
                execution.status = ExecutionStatus.FAILED
                execution.error_code = error.code
                execution.error_message = error.message
                execution.error_details = error.details
                execution.completed_at = utcnow()
                self.repository.update_execution(execution)
                self.executor.unregister(execution.id)
                logger.warning(
                    "rollup_service.force.gave_up",
                    tenant_id=tenant_id,
                    rollup_id=rollup_id,
                    execution_id=execution.id,
                )
                raise error
            await asyncio.sleep(self.settings.force_wait_poll_seconds)

    async def wait_for(self, execution_id: str) -> None:
        """Wait for a background execution started in async mode."""
        task = self._tasks.get(execution_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def cancel(
        self,
        tenant_id: str,
        user_id: Optional[str],
        execution_id: str,
        reason: Optional[str] = None,
    ) -> RollupExecution:
        execution = self.repository.get_execution(execution_id, tenant_id)
        if execution.status != ExecutionStatus.RUNNING:
            raise RollupExecutionNotRunningError(execution_id, execution.status.value)
        if not self.executor.cancel(execution_id, reason, user_id):
            if not self.executor.is_active(execution_id):
                # Running in another process or orphaned by a restart
                raise RollupExecutionNotRunningError(execution_id, "not running in this process")
        logger.info(
            "rollup_service.cancel",
            tenant_id=tenant_id,
            execution_id=execution_id,
            cancelled_by=user_id,
        )
        return execution

    def get_execution(self, tenant_id: str, execution_id: str) -> RollupExecution:
        return self.repository.get_execution(execution_id, tenant_id)

    def list_executions(
        self, tenant_id: str, rollup_id: str, limit: int = 50
    ) -> List[RollupExecution]:
        self.repository.get_config(tenant_id, rollup_id)
        return self.repository.list_executions(tenant_id, rollup_id, limit)

    # ------------------------------------------------------------------
    # Blast radius
    # ------------------------------------------------------------------

    async def blast_radius(
        self,
        tenant_id: str,
        rollup_id: str,
        execution_id: str,
        query: BlastRadiusQuery,
    ) -> BlastRadiusResult:
        self.repository.get_config(tenant_id, rollup_id)
        execution = self.repository.get_execution(execution_id, tenant_id)
        if execution.rollup_id != rollup_id:
            raise RollupExecutionNotFoundError(execution_id)
        if execution.status != ExecutionStatus.COMPLETED:
            raise RollupBlastRadiusError(
                f"Blast radius requires a completed execution; {execution_id} is "
                f"{execution.status.value}",
                details={"executionId": execution_id, "status": execution.status.value},
            )

        if not self.blast_radius_engine.is_registered(execution_id):
            stored = self.repository.load_merged_graph(execution_id)
            if stored is None:
                raise RollupBlastRadiusError(
                    f"No stored graph for execution {execution_id}",
                    details={"executionId": execution_id},
                )
            graph, names = stored
            self.blast_radius_engine.register_graph(graph, names)

        started = time.perf_counter()
        result = self.blast_radius_engine.analyze(execution_id, query)
        result.rollup_id = rollup_id
        metrics.BLAST_RADIUS_LATENCY.labels(cached=str(result.cached).lower()).observe(
            time.perf_counter() - started
        )
        if not result.cached:
            await self.publisher.publish(
                RollupEventType.BLAST_RADIUS_CALCULATED,
                tenant_id,
                {
                    "rollupId": rollup_id,
                    "executionId": execution_id,
                    "nodeIds": sorted(set(query.node_ids)),
                    "totalImpacted": result.summary.total_impacted,
                    "riskLevel": result.summary.risk_level.value,
                    "impactScore": result.summary.impact_score,
                },
                stream_id=execution_id,
                correlation_id=rollup_id,
            )
        return result

    # ------------------------------------------------------------------
    # Schedule triggers
    # ------------------------------------------------------------------

    async def handle_scan_completed(
        self, tenant_id: str, repository_id: str, scan_id: Optional[str] = None
    ) -> List[RollupExecution]:
        """Start every on-scan-complete rollup that includes the repository."""
        started: List[RollupExecution] = []
        for config in self.repository.list_scan_triggered(tenant_id, repository_id):
            try:
                execution = await self.execute(
                    tenant_id, SCAN_TRIGGER_USER, config.id, ExecuteOptions(run_async=True)
                )
            except RollupExecutionInProgressError:
                logger.info(
                    "rollup_service.scan_trigger.skipped",
                    tenant_id=tenant_id,
                    rollup_id=config.id,
                    repository_id=repository_id,
                    scan_id=scan_id,
                )
                continue
            started.append(execution)
        logger.info(
            "rollup_service.scan_trigger",
            tenant_id=tenant_id,
            repository_id=repository_id,
            scan_id=scan_id,
            executions=len(started),
        )
        return started

    async def shutdown(self) -> None:
        for execution_id in self.executor.active_executions():
            self.executor.cancel(execution_id, reason="shutdown")
        if self._tasks:
            await asyncio.gather(*self._tasks.values(), return_exceptions=True)
