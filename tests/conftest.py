"""Pytest configuration and fixtures for rollup tests

Provides:
- session_factory: sessions on a fresh in-memory SQLite database per test
- repository / publisher / graph_source: rollup collaborators
- make_executor / make_service: assembled engines with fast retries
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

from graphrollup.core.config import Settings  # noqa: E402
from graphrollup.core.db import build_engine, init_db  # noqa: E402
from graphrollup.rollup.blast_radius import BlastRadiusEngine  # noqa: E402
from graphrollup.rollup.events import RollupEventPublisher  # noqa: E402
from graphrollup.rollup.executor import RollupExecutor  # noqa: E402
from graphrollup.rollup.graph import InMemoryGraphSource  # noqa: E402
from graphrollup.rollup.repository import RollupRepository  # noqa: E402
from graphrollup.rollup.retry import RetryPolicy  # noqa: E402
from graphrollup.rollup.service import RollupService  # noqa: E402
from tests.helpers import TENANT, RecordingBroadcaster, infra_graphs  # noqa: E402


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite:///:memory:",
        redis_url=None,
        log_json=False,
        retry_base_delay_ms=0,
        retry_jitter_factor=0.0,
        matching_workers=2,
    )


@pytest.fixture
def session_factory():
    engine = build_engine("sqlite:///:memory:")
    init_db(engine)
    factory = sessionmaker(
        bind=engine, autoflush=False, autocommit=False, expire_on_commit=False
    )
    yield factory
    engine.dispose()


@pytest.fixture
def repository(session_factory):
    return RollupRepository(session_factory)


@pytest.fixture
def broadcaster():
    return RecordingBroadcaster()


@pytest.fixture
def publisher(broadcaster, session_factory):
    return RollupEventPublisher(broadcaster=broadcaster, session_factory=session_factory)


@pytest.fixture
def graph_source():
    source = InMemoryGraphSource()
    for graph in infra_graphs():
        source.add_graph(TENANT, graph)
    return source


@pytest.fixture
def sleeps():
    """Delays requested by the executor's retry flow, in seconds."""
    return []


@pytest.fixture
def make_executor(repository, graph_source, publisher, sleeps):
    def build(**overrides):
        async def fake_sleep(seconds):
            sleeps.append(seconds)

        kwargs = dict(
            repository=repository,
            graph_source=graph_source,
            publisher=publisher,
            retry_policy=RetryPolicy(max_attempts=3, base_delay_ms=100, jitter_factor=0.0),
            blast_radius_engine=BlastRadiusEngine(),
            matching_workers=2,
            sleep=fake_sleep,
        )
        kwargs.update(overrides)
        return RollupExecutor(**kwargs)

    return build


@pytest.fixture
def make_service(repository, publisher, make_executor, settings):
    def build(**executor_overrides):
        executor = make_executor(**executor_overrides)
        return RollupService(
            repository=repository,
            executor=executor,
            publisher=publisher,
            blast_radius_engine=executor.blast_radius_engine,
            settings=settings,
        )

    return build
