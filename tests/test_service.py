"""Service tests: configuration lifecycle, execution serialization, blast radius."""

import asyncio

import pytest

from graphrollup.rollup.errors import (
    RollupBlastRadiusError,
    RollupConfigurationError,
    RollupErrorCode,
    RollupExecutionInProgressError,
    RollupExecutionNotFoundError,
    RollupExecutionNotRunningError,
    RollupLimitExceededError,
    RollupNotFoundError,
    RollupVersionConflictError,
)
from graphrollup.rollup.events import RollupEventType
from graphrollup.rollup.service import SCAN_TRIGGER_USER
from graphrollup.rollup.types import (
    BlastRadiusQuery,
    ExecuteOptions,
    ExecutionStatus,
    RiskLevel,
    RollupListQuery,
    RollupStatus,
    RollupUpdateRequest,
)
from tests.helpers import TENANT, USER, GatedGraphSource, create_request

SYNC = ExecuteOptions(run_async=False)


async def create(service, **overrides):
    return await service.create_rollup(TENANT, USER, create_request(**overrides))


# ---------------------------------------------------------------------------
# Configurations
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_create_rollup_starts_as_draft(make_service, broadcaster):
    service = make_service()

    config = await create(service, description="shared buckets")

    assert config.status == RollupStatus.DRAFT
    assert config.version == 1
    assert config.created_by == USER
    assert service.get_rollup(TENANT, config.id).description == "shared buckets"
    created = broadcaster.events(RollupEventType.CONFIGURATION_CREATED.value)
    assert [e["payload"]["rollupId"] for e in created] == [config.id]
    assert created[0]["metadata"]["triggeredBy"] == USER


@pytest.mark.asyncio
async def test_create_can_activate(make_service):
    config = await create(make_service(), activate=True)

    assert config.status == RollupStatus.ACTIVE


@pytest.mark.asyncio
async def test_invalid_create_persists_nothing(make_service, broadcaster):
    service = make_service()

    with pytest.raises(RollupConfigurationError) as exc_info:
        await create(service, repositoryIds=["repo-infra"])

    assert exc_info.value.http_status == 400
    assert service.list_rollups(TENANT, RollupListQuery()) == ([], 0)
    assert broadcaster.messages == []


@pytest.mark.asyncio
async def test_create_enforces_repository_limit(make_service, settings):
    settings.max_repositories_per_rollup = 2

    with pytest.raises(RollupLimitExceededError):
        await create(make_service(), repositoryIds=["a", "b", "c"])


@pytest.mark.asyncio
async def test_update_increments_version(make_service, broadcaster):
    service = make_service()
    config = await create(service)

    updated = await service.update_rollup(
        TENANT, "user-2", config.id, RollupUpdateRequest(version=1, name="renamed", status="active")
    )

    assert updated.version == 2
    assert updated.name == "renamed"
    assert updated.status == RollupStatus.ACTIVE
    assert updated.updated_by == "user-2"
    assert updated.created_by == USER
    event = broadcaster.events(RollupEventType.CONFIGURATION_UPDATED.value)[0]
    assert event["payload"]["changedFields"] == ["name", "status"]
    assert event["payload"]["version"] == 2


@pytest.mark.asyncio
async def test_update_with_stale_version(make_service):
    service = make_service()
    config = await create(service)
    await service.update_rollup(TENANT, USER, config.id, RollupUpdateRequest(version=1, name="a"))

    with pytest.raises(RollupVersionConflictError):
        await service.update_rollup(TENANT, USER, config.id, RollupUpdateRequest(version=1, name="b"))


@pytest.mark.asyncio
async def test_update_cannot_set_execution_statuses(make_service):
    service = make_service()
    config = await create(service)

    with pytest.raises(RollupConfigurationError):
        await service.update_rollup(
            TENANT, USER, config.id, RollupUpdateRequest(version=1, status="completed")
        )


@pytest.mark.asyncio
async def test_update_is_validated(make_service):
    service = make_service()
    config = await create(service)

    with pytest.raises(RollupConfigurationError):
        await service.update_rollup(
            TENANT,
            USER,
            config.id,
            RollupUpdateRequest.model_validate(
                {"version": 1, "matchers": [{"type": "name", "fuzzyThreshold": 140}]}
            ),
        )
    assert service.get_rollup(TENANT, config.id).version == 1


@pytest.mark.asyncio
async def test_delete_rollup(make_service, broadcaster):
    service = make_service()
    config = await create(service)
    execution = await service.execute(TENANT, USER, config.id, SYNC)
    assert service.blast_radius_engine.is_registered(execution.id)

    await service.delete_rollup(TENANT, USER, config.id)

    with pytest.raises(RollupNotFoundError):
        service.get_rollup(TENANT, config.id)
    assert not service.blast_radius_engine.is_registered(execution.id)
    assert broadcaster.events(RollupEventType.CONFIGURATION_DELETED.value)


# ---------------------------------------------------------------------------
# Executions
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_sync_execution_completes(make_service):
    service = make_service()
    config = await create(service)

    execution = await service.execute(TENANT, USER, config.id, SYNC)

    assert execution.status == ExecutionStatus.COMPLETED
    assert execution.triggered_by == USER
    stored = service.get_rollup(TENANT, config.id)
    assert stored.status == RollupStatus.COMPLETED
    assert stored.last_executed_at is not None
    assert [e.id for e in service.list_executions(TENANT, config.id)] == [execution.id]


@pytest.mark.asyncio
async def test_async_execution_returns_pending(make_service):
    service = make_service()
    config = await create(service)

    execution = await service.execute(TENANT, USER, config.id)

    assert execution.status == ExecutionStatus.PENDING
    await service.wait_for(execution.id)
    assert service.get_execution(TENANT, execution.id).status == ExecutionStatus.COMPLETED


@pytest.mark.asyncio
async def test_second_execution_is_rejected_while_running(make_service, graph_source):
    gated = GatedGraphSource(graph_source)
    service = make_service(graph_source=gated)
    config = await create(service)

    first = await service.execute(TENANT, USER, config.id)
    with pytest.raises(RollupExecutionInProgressError) as exc_info:
        await service.execute(TENANT, USER, config.id)

    assert exc_info.value.code == RollupErrorCode.EXECUTION_IN_PROGRESS
    assert exc_info.value.active_execution_id == first.id
    with pytest.raises(RollupExecutionInProgressError):
        await service.update_rollup(TENANT, USER, config.id, RollupUpdateRequest(version=1, name="x"))
    with pytest.raises(RollupExecutionInProgressError):
        await service.delete_rollup(TENANT, USER, config.id)

    gated.release.set()
    await service.wait_for(first.id)
    assert service.get_rollup(TENANT, config.id).status == RollupStatus.COMPLETED


@pytest.mark.asyncio
async def test_forced_execution_queues_behind_the_running_one(make_service, graph_source):
    gated = GatedGraphSource(graph_source)
    service = make_service(graph_source=gated)
    config = await create(service)

    first = await service.execute(TENANT, USER, config.id)
    await gated.entered.wait()
    second = await service.execute(
        TENANT, USER, config.id, ExecuteOptions(force=True)
    )
    assert service.get_execution(TENANT, second.id).status == ExecutionStatus.PENDING

    gated.release.set()
    await service.wait_for(first.id)
    await service.wait_for(second.id)

    assert service.get_execution(TENANT, first.id).status == ExecutionStatus.COMPLETED
    assert service.get_execution(TENANT, second.id).status == ExecutionStatus.COMPLETED
    assert service.get_rollup(TENANT, config.id).status == RollupStatus.COMPLETED


@pytest.mark.asyncio
async def test_forced_execution_waits_for_another_process(make_service, graph_source, settings):
    settings.force_wait_poll_seconds = 0.01
    gated = GatedGraphSource(graph_source)
    api_service = make_service(graph_source=gated)
    worker_service = make_service()
    config = await create(api_service)

    first = await api_service.execute(TENANT, USER, config.id)
    await gated.entered.wait()
    second = await worker_service.execute(
        TENANT, USER, config.id, ExecuteOptions(force=True)
    )
    await asyncio.sleep(0.05)

    assert worker_service.get_execution(TENANT, second.id).status == ExecutionStatus.PENDING
    assert api_service.get_rollup(TENANT, config.id).status == RollupStatus.EXECUTING

    gated.release.set()
    await api_service.wait_for(first.id)
    await worker_service.wait_for(second.id)

    first_done = api_service.get_execution(TENANT, first.id)
    second_done = worker_service.get_execution(TENANT, second.id)
    assert first_done.status == ExecutionStatus.COMPLETED
    assert second_done.status == ExecutionStatus.COMPLETED
    assert second_done.started_at >= first_done.completed_at
    assert api_service.get_rollup(TENANT, config.id).status == RollupStatus.COMPLETED


@pytest.mark.asyncio
async def test_forced_execution_gives_up_after_its_timeout(make_service, repository, settings):
    settings.force_wait_poll_seconds = 0.05
    service = make_service()
    config = await create(service)
    # another process holds the rollup
    repository.set_status(TENANT, config.id, RollupStatus.EXECUTING)

    with pytest.raises(RollupExecutionInProgressError):
        await service.execute(
            TENANT,
            USER,
            config.id,
            ExecuteOptions(force=True, run_async=False, timeout_seconds=1),
        )

    [queued] = service.list_executions(TENANT, config.id)
    assert queued.status == ExecutionStatus.FAILED
    assert queued.error_code == RollupErrorCode.EXECUTION_IN_PROGRESS
    assert not service.executor.is_active(queued.id)
    assert service.get_rollup(TENANT, config.id).status == RollupStatus.EXECUTING


@pytest.mark.asyncio
async def test_archived_rollups_cannot_execute(make_service):
    service = make_service()
    config = await create(service)
    await service.update_rollup(TENANT, USER, config.id, RollupUpdateRequest(version=1, status="archived"))

    with pytest.raises(RollupConfigurationError):
        await service.execute(TENANT, USER, config.id, SYNC)


@pytest.mark.asyncio
async def test_scan_ids_must_line_up_with_repositories(make_service):
    service = make_service()
    config = await create(service)

    with pytest.raises(RollupConfigurationError):
        await service.execute(TENANT, USER, config.id, ExecuteOptions(scan_ids=["scan-infra-1"]))

    execution = await service.execute(
        TENANT,
        USER,
        config.id,
        ExecuteOptions(scan_ids=["scan-infra-1", "scan-app-1"], run_async=False),
    )
    assert execution.scan_ids == ["scan-infra-1", "scan-app-1"]


@pytest.mark.asyncio
async def test_failed_execution_marks_rollup_failed(make_service):
    service = make_service()
    config = await create(service, repositoryIds=["repo-infra", "repo-missing"])

    execution = await service.execute(TENANT, USER, config.id, SYNC)

    assert execution.status == ExecutionStatus.FAILED
    assert service.get_rollup(TENANT, config.id).status == RollupStatus.FAILED
    # a failed rollup can run again
    assert (await service.execute(TENANT, USER, config.id, SYNC)).status == ExecutionStatus.FAILED


@pytest.mark.asyncio
async def test_cancel_running_execution(make_service, graph_source, broadcaster):
    gated = GatedGraphSource(graph_source)
    service = make_service(graph_source=gated)
    config = await create(service)
    execution = await service.execute(TENANT, USER, config.id)
    await gated.entered.wait()

    await service.cancel(TENANT, "user-2", execution.id, reason="wrong scan")
    gated.release.set()
    await service.wait_for(execution.id)

    stored = service.get_execution(TENANT, execution.id)
    assert stored.status == ExecutionStatus.FAILED
    assert stored.error_code == RollupErrorCode.EXECUTION_CANCELLED
    assert service.get_rollup(TENANT, config.id).status == RollupStatus.FAILED
    cancelled = broadcaster.events(RollupEventType.EXECUTION_CANCELLED.value)
    assert cancelled[0]["payload"]["cancelledBy"] == "user-2"


@pytest.mark.asyncio
async def test_cancel_requires_a_running_execution(make_service):
    service = make_service()
    config = await create(service)
    execution = await service.execute(TENANT, USER, config.id, SYNC)

    with pytest.raises(RollupExecutionNotRunningError) as exc_info:
        await service.cancel(TENANT, USER, execution.id)

    assert exc_info.value.http_status == 409
    assert exc_info.value.details["status"] == "completed"
    with pytest.raises(RollupExecutionNotFoundError):
        await service.cancel("org-2", USER, execution.id)


@pytest.mark.asyncio
async def test_shutdown_cancels_running_executions(make_service, graph_source):
    gated = GatedGraphSource(graph_source)
    service = make_service(graph_source=gated)
    config = await create(service)
    execution = await service.execute(TENANT, USER, config.id)
    await gated.entered.wait()

    shutdown = asyncio.create_task(service.shutdown())
    await asyncio.sleep(0)
    gated.release.set()
    await shutdown

    stored = service.get_execution(TENANT, execution.id)
    assert stored.error_code == RollupErrorCode.EXECUTION_CANCELLED
    assert stored.error_details["reason"] == "shutdown"


# ---------------------------------------------------------------------------
# Blast radius
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_blast_radius_on_completed_execution(make_service, broadcaster):
    service = make_service()
    config = await create(service)
    execution = await service.execute(TENANT, USER, config.id, SYNC)
    query = BlastRadiusQuery(node_ids=["vpc"])

    first = await service.blast_radius(TENANT, config.id, execution.id, query)
    second = await service.blast_radius(TENANT, config.id, execution.id, query)

    assert first.rollup_id == config.id
    assert first.summary.risk_level == RiskLevel.MEDIUM
    assert first.summary.impact_score == 1.19
    assert first.cached is False
    assert second.cached is True
    calculated = broadcaster.events(RollupEventType.BLAST_RADIUS_CALCULATED.value)
    assert len(calculated) == 1
    assert calculated[0]["payload"]["riskLevel"] == "medium"


@pytest.mark.asyncio
async def test_blast_radius_loads_stored_graph(make_service):
    config = await create(make_service())
    execution = await make_service().execute(TENANT, USER, config.id, SYNC)
    # a fresh service has an empty engine, as after a restart
    restarted = make_service()
    assert not restarted.blast_radius_engine.is_registered(execution.id)

    result = await restarted.blast_radius(
        TENANT, config.id, execution.id, BlastRadiusQuery(node_ids=["logs"])
    )

    assert result.summary.total_impacted == 1


@pytest.mark.asyncio
async def test_blast_radius_requires_completed_execution(make_service):
    service = make_service()
    config = await create(service, repositoryIds=["repo-infra", "repo-missing"])
    failed = await service.execute(TENANT, USER, config.id, SYNC)

    with pytest.raises(RollupBlastRadiusError):
        await service.blast_radius(TENANT, config.id, failed.id, BlastRadiusQuery(node_ids=["vpc"]))


@pytest.mark.asyncio
async def test_blast_radius_checks_execution_belongs_to_rollup(make_service):
    service = make_service()
    config = await create(service)
    other = await create(service, name="other")
    execution = await service.execute(TENANT, USER, config.id, SYNC)

    with pytest.raises(RollupExecutionNotFoundError):
        await service.blast_radius(TENANT, other.id, execution.id, BlastRadiusQuery(node_ids=["vpc"]))


# ---------------------------------------------------------------------------
# Scan triggers
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_scan_completed_starts_triggered_rollups(make_service):
    service = make_service()
    triggered = await create(
        service, activate=True, schedule={"enabled": True, "onScanComplete": True}
    )
    await create(service, name="manual", activate=True)

    started = await service.handle_scan_completed(TENANT, "repo-app", "scan-app-2")

    assert [e.rollup_id for e in started] == [triggered.id]
    assert started[0].triggered_by == SCAN_TRIGGER_USER
    await service.wait_for(started[0].id)
    assert service.get_execution(TENANT, started[0].id).status == ExecutionStatus.COMPLETED


@pytest.mark.asyncio
async def test_scan_completed_skips_rollups_in_progress(make_service, graph_source):
    gated = GatedGraphSource(graph_source)
    service = make_service(graph_source=gated)
    config = await create(service, activate=True, schedule={"enabled": True, "onScanComplete": True})
    running = await service.execute(TENANT, USER, config.id)

    started = await service.handle_scan_completed(TENANT, "repo-infra")

    assert started == []
    gated.release.set()
    await service.wait_for(running.id)
