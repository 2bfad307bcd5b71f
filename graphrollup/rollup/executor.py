"""
Rollup executor.

Runs one rollup execution through its phases:

    loading -> matching -> merging -> storing

and owns the execution state machine (pending -> running -> completed |
failed), cooperative cancellation, the whole-execution timeout and the
retry flow for transient failures. Every transition is persisted through
the repository and published as a lifecycle event.

CPU-bound matching and merging run in worker threads; cancellation is
checked between blocks, components and phases.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

import structlog

from graphrollup.core.obs import metrics

from .blast_radius import BlastRadiusEngine
from .cancellation import CancellationToken
from .errors import (
    RollupCancelledError,
    RollupError,
    RollupErrorCode,
    RollupExecutionError,
    RollupTimeoutError,
    is_retryable_error,
)
from .events import RollupEventPublisher, RollupEventType
from .graph import GraphEdge, GraphNode, GraphSource, RepositoryGraph, RollupGraph
from .matchers import create_matchers
from .matching import MatchingCoordinator, filter_nodes
from .merge_engine import MergeEngine, MergeResult
from .repository import RollupRepository
from .retry import RetryPolicy
from .types import (
    ExecuteOptions,
    ExecutionPhase,
    ExecutionStatus,
    MatchResult,
    RollupConfiguration,
    RollupExecution,
    RollupExecutionStats,
    new_id,
    utcnow,
)

logger = structlog.get_logger(__name__)

# Blocks matched per worker-thread hop; progress is reported between hops
BLOCKS_PER_WORKER = 4


@dataclass
class _PipelineState:
    """Intermediate results carried between phases of one attempt."""

    stats: RollupExecutionStats = field(default_factory=RollupExecutionStats)
    graphs: List[RepositoryGraph] = field(default_factory=list)
    nodes: List[GraphNode] = field(default_factory=list)
    edges_by_repo: Dict[str, List[GraphEdge]] = field(default_factory=dict)
    matches: List[MatchResult] = field(default_factory=list)
    merge: Optional[MergeResult] = None


class RollupExecutor:
    """Executes rollups; one instance per process, shared across executions."""

    def __init__(
        self,
        *,
        repository: RollupRepository,
        graph_source: GraphSource,
        publisher: RollupEventPublisher,
        retry_policy: Optional[RetryPolicy] = None,
        merge_engine: Optional[MergeEngine] = None,
        blast_radius_engine: Optional[BlastRadiusEngine] = None,
        matching_workers: int = 4,
        max_merged_nodes: Optional[int] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.repository = repository
        self.graph_source = graph_source
        self.publisher = publisher
        self.retry_policy = retry_policy or RetryPolicy()
        self.merge_engine = merge_engine or MergeEngine(max_workers=matching_workers)
        self.blast_radius_engine = blast_radius_engine
        self.matching_workers = max(1, matching_workers)
        self.max_merged_nodes = max_merged_nodes
        self._sleep = sleep
        self._tokens: Dict[str, CancellationToken] = {}

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def register(self, execution_id: str) -> CancellationToken:
        token = self._tokens.get(execution_id)
        if token is None:
            token = self._tokens[execution_id] = CancellationToken(execution_id)
        return token

    def unregister(self, execution_id: str) -> None:
        self._tokens.pop(execution_id, None)

    def is_active(self, execution_id: str) -> bool:
        return execution_id in self._tokens

    def active_executions(self) -> List[str]:
        return list(self._tokens)

    def cancel(
        self,
        execution_id: str,
        reason: Optional[str] = None,
        cancelled_by: Optional[str] = None,
    ) -> bool:
        """Request cooperative cancellation; False when not running here."""
        token = self._tokens.get(execution_id)
        if token is None:
            return False
        return token.cancel(reason, cancelled_by)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def run(
        self,
        config: RollupConfiguration,
        execution: RollupExecution,
        options: ExecuteOptions,
        timeout_seconds: float,
    ) -> RollupExecution:
        """
        Run ``execution`` to a terminal state, retrying transient failures
        under fresh execution ids.

        Returns:
            The last attempt's execution (completed or failed)
        """
        while True:
            token = self.register(execution.id)
            try:
                error = await self._run_attempt(config, execution, token, options, timeout_seconds)
            finally:
                self._tokens.pop(execution.id, None)

            if error is None:
                return execution

            cancelled = isinstance(error, (RollupCancelledError, RollupTimeoutError))
            will_retry = (
                not cancelled
                and is_retryable_error(error)
                and self.retry_policy.should_retry(execution.attempt)
            )
            await self._fail(config, execution, error, token, will_retry)
            if not will_retry:
                return execution

            execution = await self._schedule_retry(config, execution, error)

    async def _schedule_retry(
        self, config: RollupConfiguration, failed: RollupExecution, error: RollupError
    ) -> RollupExecution:
        delay_ms = self.retry_policy.calculate_delay_ms(failed.attempt)
        retry = RollupExecution(
            id=new_id(),
            rollup_id=failed.rollup_id,
            tenant_id=failed.tenant_id,
            scan_ids=list(failed.scan_ids),
            attempt=failed.attempt + 1,
            retry_of=failed.id,
            triggered_by=failed.triggered_by,
        )
        self.repository.create_execution(retry)
        self.register(retry.id)
        await self.publisher.execution_retrying(
            tenant_id=failed.tenant_id,
            rollup_id=failed.rollup_id,
            execution_id=retry.id,
            previous_execution_id=failed.id,
            attempt=retry.attempt,
            max_attempts=self.retry_policy.max_attempts,
            previous_error=error.to_dict(),
            delay_ms=delay_ms,
        )
        logger.info(
            "rollup_executor.retry.scheduled",
            rollup_id=config.id,
            execution_id=retry.id,
            retry_of=failed.id,
            attempt=retry.attempt,
            delay_ms=delay_ms,
        )
        await self._sleep(delay_ms / 1000)
        return retry

    async def _run_attempt(
        self,
        config: RollupConfiguration,
        execution: RollupExecution,
        token: CancellationToken,
        options: ExecuteOptions,
        timeout_seconds: float,
    ) -> Optional[RollupError]:
        started = time.monotonic()
        state = _PipelineState()
        execution.status = ExecutionStatus.RUNNING
        execution.started_at = utcnow()
        execution.phase = ExecutionPhase.LOADING
        execution.stats = state.stats
        self.repository.update_execution(execution)
        await self.publisher.execution_started(
            tenant_id=execution.tenant_id,
            rollup_id=execution.rollup_id,
            execution_id=execution.id,
            repository_ids=list(config.repository_ids),
            scan_ids=list(options.scan_ids or config.scan_ids or []),
            attempt=execution.attempt,
            triggered_by=execution.triggered_by,
        )
        log = logger.bind(
            tenant_id=execution.tenant_id,
            rollup_id=execution.rollup_id,
            execution_id=execution.id,
            attempt=execution.attempt,
        )
        log.info("rollup_executor.execution.started")

        try:
            await asyncio.wait_for(
                self._pipeline(config, execution, token, options, state),
                timeout=timeout_seconds,
            )
        except asyncio.TimeoutError:
            # Stop worker threads still matching or merging
            token.expire(timeout_seconds)
            return self._with_elapsed(
                RollupTimeoutError(execution.id, timeout_seconds), state, started
            )
        except RollupError as e:
            return self._with_elapsed(e, state, started)
        except Exception as e:
            log.error(
                "rollup_executor.execution.unexpected_error",
                phase=execution.phase.value if execution.phase else None,
                error=str(e),
                exc_info=True,
            )
            wrapped = RollupExecutionError(
                f"Execution failed during {execution.phase.value if execution.phase else 'startup'}: {e}",
                phase=execution.phase.value if execution.phase else None,
                partial_stats=state.stats.to_dict(),
                retryable=is_retryable_error(e),
                cause_code=type(e).__name__,
            )
            return self._with_elapsed(wrapped, state, started)

        state.stats.execution_time_ms = int((time.monotonic() - started) * 1000)
        execution.status = ExecutionStatus.COMPLETED
        execution.progress = 100
        execution.completed_at = utcnow()
        self.repository.update_execution(execution)
        await self.publisher.execution_completed(
            tenant_id=execution.tenant_id,
            rollup_id=execution.rollup_id,
            execution_id=execution.id,
            stats=state.stats.to_dict(),
        )
        metrics.EXECUTIONS_TOTAL.labels(status="completed").inc()
        log.info(
            "rollup_executor.execution.completed",
            duration_ms=state.stats.execution_time_ms,
            merged_nodes=state.stats.merged_node_count,
            matches=len(state.matches),
        )
        return None

    @staticmethod
    def _with_elapsed(
        error: RollupError, state: _PipelineState, started: float
    ) -> RollupError:
        state.stats.execution_time_ms = int((time.monotonic() - started) * 1000)
        return error

    async def _fail(
        self,
        config: RollupConfiguration,
        execution: RollupExecution,
        error: RollupError,
        token: CancellationToken,
        will_retry: bool,
    ) -> None:
        execution.status = ExecutionStatus.FAILED
        execution.completed_at = utcnow()
        execution.error_code = error.code
        execution.error_message = error.message
        execution.error_details = {**error.details, "phase": execution.phase.value if execution.phase else None}
        try:
            self.repository.update_execution(execution)
        except RollupError as e:
            logger.error(
                "rollup_executor.execution.persist_failure_error",
                execution_id=execution.id,
                error=str(e),
            )

        if isinstance(error, RollupCancelledError):
            await self.publisher.execution_cancelled(
                tenant_id=execution.tenant_id,
                rollup_id=execution.rollup_id,
                execution_id=execution.id,
                reason=token.reason,
                cancelled_by=token.cancelled_by,
                progress_at_cancellation=execution.progress,
                phase=execution.phase,
            )
            status = "cancelled"
        else:
            await self.publisher.execution_failed(
                tenant_id=execution.tenant_id,
                rollup_id=execution.rollup_id,
                execution_id=execution.id,
                error=error.to_dict(),
                phase=execution.phase,
                will_retry=will_retry,
                attempt=execution.attempt,
            )
            status = "timeout" if error.code == RollupErrorCode.EXECUTION_TIMEOUT else "failed"
        metrics.EXECUTIONS_TOTAL.labels(status=status).inc()
        logger.warning(
            "rollup_executor.execution.failed",
            tenant_id=execution.tenant_id,
            rollup_id=config.id,
            execution_id=execution.id,
            phase=execution.phase.value if execution.phase else None,
            error_code=error.code,
            will_retry=will_retry,
        )

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    async def _pipeline(
        self,
        config: RollupConfiguration,
        execution: RollupExecution,
        token: CancellationToken,
        options: ExecuteOptions,
        state: _PipelineState,
    ) -> None:
        token.raise_if_cancelled()
        await self._timed(execution, ExecutionPhase.LOADING, self._load, config, execution, options, state)
        token.raise_if_cancelled()
        await self._timed(execution, ExecutionPhase.MATCHING, self._match, config, execution, token, state)
        token.raise_if_cancelled()
        await self._timed(execution, ExecutionPhase.MERGING, self._merge, config, execution, token, state)
        token.raise_if_cancelled()
        await self._timed(execution, ExecutionPhase.STORING, self._store, config, execution, options, state)

    async def _timed(
        self,
        execution: RollupExecution,
        phase: ExecutionPhase,
        work: Callable[..., Awaitable[None]],
        *args,
    ) -> None:
        execution.phase = phase
        await self._progress(execution, phase, 0)
        if phase != ExecutionPhase.LOADING:
            self.repository.update_execution(execution)
        started = time.monotonic()
        await work(*args)
        elapsed = time.monotonic() - started
        if execution.stats is None:
            raise RollupExecutionError(
                f"Execution {execution.id} lost its stats during {phase.value}", phase=phase.value
            )
        execution.stats.phase_timings_ms[phase.value] = int(elapsed * 1000)
        metrics.PHASE_LATENCY.labels(phase=phase.value).observe(elapsed)
        await self._progress(execution, phase, 100)

    async def _progress(
        self,
        execution: RollupExecution,
        phase: ExecutionPhase,
        percentage: float,
        message: Optional[str] = None,
    ) -> None:
        await self.publisher.progress(
            tenant_id=execution.tenant_id,
            rollup_id=execution.rollup_id,
            execution_id=execution.id,
            phase=phase,
            percentage=percentage,
            message=message,
        )
        execution.progress = max(execution.progress, self.publisher.tracker(execution.id).overall)

    async def _load(
        self,
        config: RollupConfiguration,
        execution: RollupExecution,
        options: ExecuteOptions,
        state: _PipelineState,
    ) -> None:
        targets = split_scan_ids(config, options)
        loaded = 0

        async def load(repository_id: str, scan_id: Optional[str]) -> RepositoryGraph:
            nonlocal loaded
            graph = await self.graph_source.load_graph(
                execution.tenant_id, repository_id, scan_id
            )
            loaded += 1
            await self._progress(
                execution,
                ExecutionPhase.LOADING,
                loaded * 100 / len(targets),
                message=f"Loaded {repository_id}",
            )
            return graph

        state.graphs = list(await asyncio.gather(*(load(r, s) for r, s in targets)))
        execution.scan_ids = [g.scan_id or "latest" for g in state.graphs]

        stats = state.stats
        preserve = set(config.preserve_edge_types) if config.preserve_edge_types else None
        for graph in state.graphs:
            nodes = filter_nodes(graph.nodes, config.include_node_types, config.exclude_node_types)
            kept = {n.id for n in nodes}
            edges = [
                e
                for e in graph.edges
                if e.source in kept
                and e.target in kept
                and (preserve is None or e.type in preserve)
            ]
            state.nodes.extend(nodes)
            state.edges_by_repo[graph.repository_id] = edges
            for node in nodes:
                stats.nodes_by_type[node.type] = stats.nodes_by_type.get(node.type, 0) + 1
            for edge in edges:
                stats.edges_by_type[edge.type] = stats.edges_by_type.get(edge.type, 0) + 1
        stats.total_nodes_processed = len(state.nodes)
        stats.total_edges_processed = sum(len(e) for e in state.edges_by_repo.values())

    async def _match(
        self,
        config: RollupConfiguration,
        execution: RollupExecution,
        token: CancellationToken,
        state: _PipelineState,
    ) -> None:
        coordinator = MatchingCoordinator(
            create_matchers(config.matchers), max_workers=self.matching_workers
        )
        blocks = coordinator.build_blocks(state.nodes)
        await self.publisher.publish(
            RollupEventType.MATCHING_STARTED,
            execution.tenant_id,
            {
                "rollupId": execution.rollup_id,
                "executionId": execution.id,
                "nodeCount": len(state.nodes),
                "blockCount": len(blocks),
                "matcherCount": len(coordinator.matchers),
            },
            stream_id=execution.id,
            correlation_id=execution.rollup_id,
        )

        collected = {}
        pairs = 0
        batch = self.matching_workers * BLOCKS_PER_WORKER
        for start in range(0, len(blocks), batch):
            found, compared = await asyncio.to_thread(
                coordinator.match_blocks, blocks[start : start + batch], token
            )
            collected.update(found)
            pairs += compared
            done = min(start + batch, len(blocks))
            await self._progress(execution, ExecutionPhase.MATCHING, done * 100 / len(blocks))

        result = coordinator.finalize(collected, len(blocks), pairs)
        state.matches = result.matches

        stats = state.stats
        stats.matches_by_strategy = dict(result.matches_by_strategy)
        stats.nodes_matched = len(result.matched_node_keys)
        stats.nodes_unmatched = stats.total_nodes_processed - stats.nodes_matched
        for strategy, count in result.matches_by_strategy.items():
            if count:
                metrics.MATCHES_TOTAL.labels(strategy=strategy).inc(count)

        await self.publisher.publish(
            RollupEventType.MATCHING_COMPLETED,
            execution.tenant_id,
            {
                "rollupId": execution.rollup_id,
                "executionId": execution.id,
                "matchCount": len(result.matches),
                "matchesByStrategy": result.matches_by_strategy,
                "candidatePairs": pairs,
            },
            stream_id=execution.id,
            correlation_id=execution.rollup_id,
        )

    async def _merge(
        self,
        config: RollupConfiguration,
        execution: RollupExecution,
        token: CancellationToken,
        state: _PipelineState,
    ) -> None:
        await self.publisher.publish(
            RollupEventType.MERGE_STARTED,
            execution.tenant_id,
            {
                "rollupId": execution.rollup_id,
                "executionId": execution.id,
                "matchCount": len(state.matches),
                "conflictResolution": config.merge_options.conflict_resolution.value,
            },
            stream_id=execution.id,
            correlation_id=execution.rollup_id,
        )
        merged = await asyncio.to_thread(
            self.merge_engine.merge,
            state.nodes,
            state.edges_by_repo,
            state.matches,
            config.merge_options,
            max_nodes=self.max_merged_nodes,
            token=token,
        )
        state.merge = merged

        for conflict in merged.conflicts:
            metrics.MERGE_CONFLICTS.labels(resolution=conflict.resolution.value).inc()
            await self.publisher.publish(
                RollupEventType.MERGE_CONFLICT,
                execution.tenant_id,
                {
                    "rollupId": execution.rollup_id,
                    "executionId": execution.id,
                    "conflict": conflict.to_dict(),
                },
                stream_id=execution.id,
                correlation_id=execution.rollup_id,
            )

        stats = state.stats
        stats.merged_node_count = len(merged.merged_nodes)
        stats.merge_conflicts = len(merged.conflicts)
        stats.cross_repo_edges_created = merged.stats.cross_repo_edges

        await self.publisher.publish(
            RollupEventType.MERGE_COMPLETED,
            execution.tenant_id,
            {
                "rollupId": execution.rollup_id,
                "executionId": execution.id,
                "mergedNodeCount": stats.merged_node_count,
                "passthroughNodeCount": len(merged.passthrough_nodes),
                "crossRepoEdges": stats.cross_repo_edges_created,
                "conflicts": stats.merge_conflicts,
                "componentsSkipped": merged.stats.components_skipped,
            },
            stream_id=execution.id,
            correlation_id=execution.rollup_id,
        )

    async def _store(
        self,
        config: RollupConfiguration,
        execution: RollupExecution,
        options: ExecuteOptions,
        state: _PipelineState,
    ) -> None:
        merged = state.merge
        if merged is None:
            raise RollupExecutionError(
                "Nothing to store: the merge phase produced no result",
                phase=ExecutionPhase.STORING.value,
            )
        graph = RollupGraph(
            execution_id=execution.id,
            merged_nodes=merged.merged_nodes,
            passthrough_nodes=merged.passthrough_nodes,
            edges=merged.edges,
        )
        repository_names = self._repository_names(state.graphs)
        self.repository.save_merged_graph(
            execution.tenant_id, execution.rollup_id, graph, repository_names
        )
        if options.include_match_details:
            execution.matches = list(state.matches)
            execution.merged_nodes = list(merged.merged_nodes)
        if self.blast_radius_engine is not None:
            self.blast_radius_engine.register_graph(graph, repository_names)

    @staticmethod
    def _repository_names(graphs: List[RepositoryGraph]) -> Dict[str, str]:
        names: Dict[str, str] = {}
        for graph in graphs:
            names[graph.repository_id] = graph.name or graph.repository_id
        return names


def split_scan_ids(
    config: RollupConfiguration, options: ExecuteOptions
) -> List[Tuple[str, Optional[str]]]:
    """(repository id, scan id or None for latest) in configuration order."""
    requested = options.scan_ids or config.scan_ids
    if requested:
        return list(zip(config.repository_ids, requested))
    return [(repo, None) for repo in config.repository_ids]
