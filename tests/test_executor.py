"""Executor tests: phases, events, retry, cancellation and timeout."""

import asyncio

import pytest

from graphrollup.rollup.errors import (
    GraphSourceUnavailableError,
    RollupErrorCode,
    RollupExecutionError,
)
from graphrollup.rollup.events import RollupEventType, replay_execution
from graphrollup.rollup.executor import _PipelineState
from graphrollup.rollup.types import (
    ExecuteOptions,
    ExecutionPhase,
    ExecutionStatus,
    RollupExecution,
    new_id,
)
from tests.helpers import (
    TENANT,
    USER,
    FlakyGraphSource,
    GatedGraphSource,
    configuration,
)

OPTIONS = ExecuteOptions(run_async=False)


def prepare(repository, **config_overrides):
    config = repository.create_config(configuration(**config_overrides))
    execution = repository.create_execution(
        RollupExecution(id=new_id(), rollup_id=config.id, tenant_id=TENANT, triggered_by=USER)
    )
    return config, execution


def lifecycle(broadcaster):
    return [
        e["type"]
        for e in broadcaster.events()
        if e["type"] != RollupEventType.EXECUTION_PROGRESS.value
    ]


@pytest.mark.asyncio
async def test_successful_execution_runs_every_phase(make_executor, repository, broadcaster):
    executor = make_executor()
    config, execution = prepare(repository)

    result = await executor.run(config, execution, OPTIONS, timeout_seconds=30)

    assert result.id == execution.id
    assert result.status == ExecutionStatus.COMPLETED
    assert result.phase == ExecutionPhase.STORING
    assert result.progress == 100
    assert result.scan_ids == ["scan-infra-1", "scan-app-1"]

    stats = result.stats
    assert stats.total_nodes_processed == 5
    assert stats.total_edges_processed == 3
    assert stats.nodes_matched == 2
    assert stats.nodes_unmatched == 3
    assert stats.merged_node_count == 1
    assert stats.cross_repo_edges_created == 3
    assert stats.matches_by_strategy["arn"] == 1
    assert set(stats.phase_timings_ms) == {"loading", "matching", "merging", "storing"}

    stored = repository.get_execution(execution.id, TENANT)
    assert stored.status == ExecutionStatus.COMPLETED
    assert stored.stats.merged_node_count == 1
    graph, names = repository.load_merged_graph(execution.id)
    assert len(graph.merged_nodes) == 1
    assert names == {"repo-infra": "Infrastructure", "repo-app": "Application"}
    assert executor.blast_radius_engine.is_registered(execution.id)
    assert not executor.is_active(execution.id)

    assert lifecycle(broadcaster) == [
        "rollup.execution.started",
        "rollup.matching.started",
        "rollup.matching.completed",
        "rollup.merge.started",
        "rollup.merge.completed",
        "rollup.execution.completed",
    ]


@pytest.mark.asyncio
async def test_progress_events_move_forward(make_executor, repository, broadcaster):
    config, execution = prepare(repository)

    await make_executor().run(config, execution, OPTIONS, timeout_seconds=30)

    progress = broadcaster.events(RollupEventType.EXECUTION_PROGRESS.value)
    phases = [e["payload"]["phase"] for e in progress]
    overall = [e["payload"]["overallProgress"] for e in progress]
    order = ["loading", "matching", "merging", "storing"]
    assert [order.index(p) for p in phases] == sorted(order.index(p) for p in phases)
    assert overall == sorted(overall)
    assert overall[-1] == 100
    assert any(e["payload"].get("message") == "Loaded repo-infra" for e in progress)


@pytest.mark.asyncio
async def test_events_are_persisted_per_execution(make_executor, repository, session_factory):
    config, execution = prepare(repository)
    await make_executor().run(config, execution, OPTIONS, timeout_seconds=30)

    with session_factory() as session:
        projection = replay_execution(session, execution.id)

    assert projection.execution_id == execution.id
    assert projection.status == ExecutionStatus.COMPLETED
    assert projection.progress == 100


@pytest.mark.asyncio
async def test_match_details_are_kept_on_request(make_executor, repository):
    config, execution = prepare(repository)

    result = await make_executor().run(
        config,
        execution,
        ExecuteOptions(run_async=False, include_match_details=True),
        timeout_seconds=30,
    )

    assert [m.strategy.value for m in result.matches] == ["arn"]
    assert len(result.merged_nodes) == 1
    assert repository.get_execution(execution.id).matches[0].matched_attribute == "arn"


@pytest.mark.asyncio
async def test_filters_and_preserved_edge_types(make_executor, repository):
    config, execution = prepare(repository, preserve_edge_types=["triggers"])

    result = await make_executor().run(config, execution, OPTIONS, timeout_seconds=30)

    assert result.stats.total_edges_processed == 1
    assert result.stats.edges_by_type == {"triggers": 1}
    assert result.stats.cross_repo_edges_created == 1


@pytest.mark.asyncio
async def test_missing_repository_fails_without_retry(make_executor, repository, broadcaster, sleeps):
    config, execution = prepare(repository, repository_ids=["repo-infra", "repo-missing"])

    result = await make_executor().run(config, execution, OPTIONS, timeout_seconds=30)

    assert result.id == execution.id
    assert result.status == ExecutionStatus.FAILED
    assert result.error_code == RollupErrorCode.REPOSITORY_NOT_FOUND
    assert result.error_details["phase"] == "loading"
    assert sleeps == []
    failed = broadcaster.events(RollupEventType.EXECUTION_FAILED.value)
    assert [e["payload"]["willRetry"] for e in failed] == [False]
    assert repository.get_execution(execution.id).status == ExecutionStatus.FAILED


@pytest.mark.asyncio
async def test_transient_failure_is_retried_under_a_new_id(
    make_executor, repository, broadcaster, graph_source, sleeps
):
    flaky = FlakyGraphSource(graph_source, failures=1, error=GraphSourceUnavailableError("down"))
    executor = make_executor(graph_source=flaky)
    config, execution = prepare(repository)

    result = await executor.run(config, execution, OPTIONS, timeout_seconds=30)

    assert result.status == ExecutionStatus.COMPLETED
    assert result.id != execution.id
    assert result.attempt == 2
    assert result.retry_of == execution.id
    assert result.triggered_by == USER
    assert sleeps == [0.1]

    first = repository.get_execution(execution.id)
    assert first.status == ExecutionStatus.FAILED
    assert first.error_code == RollupErrorCode.GRAPH_SOURCE_UNAVAILABLE

    retrying = broadcaster.events(RollupEventType.EXECUTION_RETRYING.value)
    assert len(retrying) == 1
    assert retrying[0]["payload"]["previousExecutionId"] == execution.id
    assert retrying[0]["payload"]["executionId"] == result.id
    assert retrying[0]["payload"]["delayMs"] == 100
    assert retrying[0]["metadata"]["causationId"] == execution.id


@pytest.mark.asyncio
async def test_retries_stop_at_max_attempts(make_executor, repository, broadcaster, graph_source, sleeps):
    flaky = FlakyGraphSource(graph_source, failures=100, error=ConnectionError("refused"))
    config, execution = prepare(repository)

    result = await make_executor(graph_source=flaky).run(config, execution, OPTIONS, timeout_seconds=30)

    assert result.status == ExecutionStatus.FAILED
    assert result.attempt == 3
    assert result.error_code == RollupErrorCode.EXECUTION_FAILED
    assert result.error_details["causeCode"] == "ConnectionError"
    assert sleeps == [0.1, 0.2]
    failed = broadcaster.events(RollupEventType.EXECUTION_FAILED.value)
    assert [e["payload"]["willRetry"] for e in failed] == [True, True, False]
    assert len(repository.list_executions(TENANT, config.id)) == 3


@pytest.mark.asyncio
async def test_unexpected_errors_are_wrapped_and_not_retried(
    make_executor, repository, graph_source, sleeps
):
    flaky = FlakyGraphSource(graph_source, failures=1, error=KeyError("nodes"))
    config, execution = prepare(repository)

    result = await make_executor(graph_source=flaky).run(config, execution, OPTIONS, timeout_seconds=30)

    assert result.status == ExecutionStatus.FAILED
    assert result.error_code == RollupErrorCode.EXECUTION_FAILED
    assert result.error_details["causeCode"] == "KeyError"
    assert "partialStats" in result.error_details
    assert sleeps == []


@pytest.mark.asyncio
async def test_node_limit_fails_during_merge(make_executor, repository):
    config, execution = prepare(repository)

    result = await make_executor(max_merged_nodes=2).run(config, execution, OPTIONS, timeout_seconds=30)

    assert result.status == ExecutionStatus.FAILED
    assert result.error_code == RollupErrorCode.MAX_NODES_EXCEEDED
    assert result.phase == ExecutionPhase.MERGING


@pytest.mark.asyncio
async def test_cancel_stops_at_the_next_checkpoint(
    make_executor, repository, broadcaster, graph_source, sleeps
):
    gated = GatedGraphSource(graph_source)
    executor = make_executor(graph_source=gated)
    config, execution = prepare(repository)

    task = asyncio.create_task(executor.run(config, execution, OPTIONS, timeout_seconds=30))
    await gated.entered.wait()
    assert executor.is_active(execution.id)
    assert executor.cancel(execution.id, "user asked", USER) is True
    assert executor.cancel(execution.id, "again", USER) is False
    gated.release.set()
    result = await task

    assert result.status == ExecutionStatus.FAILED
    assert result.error_code == RollupErrorCode.EXECUTION_CANCELLED
    assert sleeps == []
    cancelled = broadcaster.events(RollupEventType.EXECUTION_CANCELLED.value)
    assert len(cancelled) == 1
    payload = cancelled[0]["payload"]
    assert payload["reason"] == "user asked"
    assert payload["cancelledBy"] == USER
    assert payload["phase"] == "loading"
    assert broadcaster.events(RollupEventType.MATCHING_STARTED.value) == []


@pytest.mark.asyncio
async def test_cancel_unknown_execution(make_executor):
    assert make_executor().cancel("not-running") is False


@pytest.mark.asyncio
async def test_timeout_fails_without_retry(make_executor, repository, broadcaster, graph_source, sleeps):
    gated = GatedGraphSource(graph_source)
    config, execution = prepare(repository)

    result = await make_executor(graph_source=gated).run(
        config, execution, OPTIONS, timeout_seconds=0.05
    )

    assert result.status == ExecutionStatus.FAILED
    assert result.error_code == RollupErrorCode.EXECUTION_TIMEOUT
    assert result.error_details["timeoutSeconds"] == 0.05
    assert sleeps == []
    failed = broadcaster.events(RollupEventType.EXECUTION_FAILED.value)
    assert failed[0]["payload"]["willRetry"] is False


@pytest.mark.asyncio
async def test_storing_without_a_merge_result_fails_the_phase(make_executor, repository):
    config, execution = prepare(repository)

    with pytest.raises(RollupExecutionError) as exc_info:
        await make_executor()._store(config, execution, OPTIONS, _PipelineState())

    assert exc_info.value.details["phase"] == ExecutionPhase.STORING.value
    assert repository.load_merged_graph(execution.id) is None
