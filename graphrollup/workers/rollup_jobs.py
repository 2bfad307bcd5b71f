"""
Background rollup jobs.

Scheduled (cron) and scan-completed triggers enqueue these actors; each
job runs one execution to completion inside the worker process.
"""

import asyncio
import logging
from functools import lru_cache
from typing import List, Optional

import dramatiq
from dramatiq.brokers.redis import RedisBroker
from dramatiq.brokers.stub import StubBroker
from sqlalchemy.orm import sessionmaker

from ..api.main import build_rollup_service
from ..core.config import settings
from ..core.db import get_session_factory, init_db
from ..rollup.errors import RollupError, RollupExecutionInProgressError
from ..rollup.service import SCAN_TRIGGER_USER, RollupService
from ..rollup.types import ExecuteOptions

logger = logging.getLogger(__name__)

# Broker
if settings.redis_url:
    broker = RedisBroker(url=settings.redis_url)
else:
    broker = StubBroker()
    broker.emit_after("process_boot")
dramatiq.set_broker(broker)


@lru_cache(maxsize=1)
def _session_factory() -> sessionmaker:
    init_db()
    return get_session_factory()


async def _with_service(job):
    # asyncio primitives and HTTP clients are loop-bound, so each job gets its own service
    service: RollupService = build_rollup_service(settings, session_factory=_session_factory())
    try:
        return await job(service)
    finally:
        await service.executor.graph_source.close()
        await service.publisher.close()


@dramatiq.actor(max_retries=0)
def execute_rollup(
    tenant_id: str,
    rollup_id: str,
    triggered_by: Optional[str] = None,
    scan_ids: Optional[List[str]] = None,
) -> None:
    """Run one execution synchronously; transient failures retry inside the executor."""
    options = ExecuteOptions(scan_ids=scan_ids, run_async=False)

    async def job(service: RollupService):
        return await service.execute(tenant_id, triggered_by, rollup_id, options)

    try:
        execution = asyncio.run(_with_service(job))
    except RollupExecutionInProgressError:
        logger.info(f"Skipping rollup {rollup_id}: an execution is already in progress")
        return
    except RollupError as e:
        logger.error(f"Rollup job for {rollup_id} rejected: {e.code} {e.message}")
        return
    logger.info(
        f"Rollup job for {rollup_id} finished: execution={execution.id} "
        f"status={execution.status.value}"
    )


@dramatiq.actor(max_retries=0)
def scan_completed(tenant_id: str, repository_id: str, scan_id: Optional[str] = None) -> None:
    """Fan out one execution per on-scan-complete rollup that includes the repository."""

    async def job(service: RollupService):
        return service.repository.list_scan_triggered(tenant_id, repository_id)

    configs = asyncio.run(_with_service(job))
    for config in configs:
        execute_rollup.send(tenant_id, config.id, SCAN_TRIGGER_USER)
    logger.info(
        f"Scan {scan_id or 'latest'} of {repository_id} triggered {len(configs)} rollup(s)"
    )
