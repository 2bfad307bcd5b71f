"""
Rollup API application factory.

Serve with: uvicorn graphrollup.api.main:create_app --factory
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from sqlalchemy.orm import sessionmaker

# ---- Observability imports ----
from graphrollup.core.obs.obs_logging import configure_json_logging, logger
from graphrollup.core.obs.metrics import metrics_app

from graphrollup.core.config import Settings, get_settings
from graphrollup.core.db import build_engine, init_db
from graphrollup.infra.broadcast.base import Broadcast, build_broadcaster
from graphrollup.rollup.blast_radius import BlastRadiusEngine
from graphrollup.rollup.events import RollupEventPublisher
from graphrollup.rollup.executor import RollupExecutor
from graphrollup.rollup.graph import GraphSource, HttpGraphSource, InMemoryGraphSource
from graphrollup.rollup.merge_engine import MergeEngine
from graphrollup.rollup.repository import RollupRepository
from graphrollup.rollup.retry import RetryPolicy
from graphrollup.rollup.service import RollupService
from .routers.rollups import router as rollups_router


def build_graph_source(settings: Settings) -> GraphSource:
    if settings.graph_api_url:
        return HttpGraphSource(
            settings.graph_api_url,
            token=settings.graph_api_token,
            timeout=settings.graph_api_timeout_seconds,
        )
    return InMemoryGraphSource()


def build_rollup_service(
    settings: Settings,
    *,
    session_factory: Optional[sessionmaker] = None,
    graph_source: Optional[GraphSource] = None,
    broadcaster: Optional[Broadcast] = None,
) -> RollupService:
    """Assemble the rollup service and its collaborators from settings."""
    if session_factory is None:
        engine = build_engine(settings.sqlalchemy_url)
        init_db(engine)
        session_factory = sessionmaker(
            bind=engine, autoflush=False, autocommit=False, expire_on_commit=False
        )

    repository = RollupRepository(session_factory)
    publisher = RollupEventPublisher(
        broadcaster=broadcaster or build_broadcaster(settings.redis_url),
        session_factory=session_factory,
        channel_prefix=settings.event_channel_prefix,
    )
    blast_radius_engine = BlastRadiusEngine(
        cache_ttl_seconds=settings.blast_radius_cache_ttl_seconds,
        max_cache_entries=settings.blast_radius_cache_max_entries,
    )
    executor = RollupExecutor(
        repository=repository,
        graph_source=graph_source or build_graph_source(settings),
        publisher=publisher,
        retry_policy=RetryPolicy.from_settings(settings),
        merge_engine=MergeEngine(max_workers=settings.matching_workers),
        blast_radius_engine=blast_radius_engine,
        matching_workers=settings.matching_workers,
        max_merged_nodes=settings.max_merged_nodes,
    )
    return RollupService(
        repository=repository,
        executor=executor,
        publisher=publisher,
        blast_radius_engine=blast_radius_engine,
        settings=settings,
    )


def create_app(
    settings: Optional[Settings] = None,
    *,
    session_factory: Optional[sessionmaker] = None,
    graph_source: Optional[GraphSource] = None,
    broadcaster: Optional[Broadcast] = None,
) -> FastAPI:
    settings = settings or get_settings()
    if settings.log_json:
        configure_json_logging(settings.log_level)

    service = build_rollup_service(
        settings,
        session_factory=session_factory,
        graph_source=graph_source,
        broadcaster=broadcaster,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan: drain executions and close transports on shutdown."""
        yield
        try:
            await service.shutdown()
            await service.executor.graph_source.close()
            await service.publisher.close()
        except Exception as e:
            logger.warning(f"Shutdown warning: {e}")

    app = FastAPI(title=f"{settings.app_name} - Rollup API", lifespan=lifespan)
    app.state.settings = settings
    app.state.rollup_service = service

    app.include_router(rollups_router)
    if settings.prometheus_enabled:
        app.mount("/metrics", metrics_app())

    @app.get("/health")
    def health():
        return {"status": "ok", "service": settings.app_name}

    return app
