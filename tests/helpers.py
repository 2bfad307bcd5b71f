"""Builders shared by the rollup test modules."""

import asyncio
import json
from typing import Any, Dict, List, Optional

from graphrollup.infra.broadcast.base import Broadcast
from graphrollup.rollup.graph import (
    GraphEdge,
    GraphNode,
    GraphSource,
    NodeLocation,
    RepositoryGraph,
)
from graphrollup.rollup.types import (
    ArnMatcherConfig,
    MatchingStrategy,
    MatchResult,
    NameMatcherConfig,
    RollupConfiguration,
    RollupCreateRequest,
)

TENANT = "org-1"
USER = "user-1"


def node(
    repo: str,
    node_id: str,
    *,
    type: str = "terraform_resource",
    name: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    file: Optional[str] = "main.tf",
) -> GraphNode:
    return GraphNode(
        id=node_id,
        type=type,
        name=name or node_id,
        repository_id=repo,
        location=NodeLocation(file=file, line_start=1, line_end=10) if file else None,
        metadata=dict(metadata or {}),
    )


def edge(edge_id: str, source: str, target: str, type: str = "depends_on") -> GraphEdge:
    return GraphEdge(id=edge_id, source=source, target=target, type=type)


def bucket(repo: str, node_id: str, bucket_name: str, **metadata) -> GraphNode:
    return node(
        repo,
        node_id,
        name=bucket_name,
        metadata={
            "resourceType": "aws_s3_bucket",
            "arn": f"arn:aws:s3:::{bucket_name}",
            **metadata,
        },
    )


def match(
    a: GraphNode,
    b: GraphNode,
    strategy: MatchingStrategy = MatchingStrategy.NAME,
    confidence: float = 100,
) -> MatchResult:
    return MatchResult(
        source_node_id=a.id,
        source_repo_id=a.repository_id,
        target_node_id=b.id,
        target_repo_id=b.repository_id,
        strategy=strategy,
        confidence=confidence,
        matched_attribute=strategy.value,
        source_value=a.name,
        target_value=b.name,
    )


def infra_graphs() -> List[RepositoryGraph]:
    """
    Two repositories sharing one S3 bucket:

    repo-infra:  vpc -> logs (bucket)
    repo-app:    api -> logs (same bucket) -> archiver
    """
    infra = RepositoryGraph(
        repository_id="repo-infra",
        scan_id="scan-infra-1",
        name="Infrastructure",
        nodes=[
            node("repo-infra", "vpc", type="terraform_resource", metadata={"resourceType": "aws_vpc"}),
            bucket("repo-infra", "logs", "app-logs", versioning=True),
        ],
        edges=[edge("e1", "vpc", "logs")],
    )
    app = RepositoryGraph(
        repository_id="repo-app",
        scan_id="scan-app-1",
        name="Application",
        nodes=[
            node("repo-app", "api", type="terraform_resource", metadata={"resourceType": "aws_lambda_function"}),
            bucket("repo-app", "logs-ref", "app-logs"),
            node("repo-app", "archiver", type="terraform_resource", metadata={"resourceType": "aws_lambda_function"}),
        ],
        edges=[
            edge("e2", "api", "logs-ref", type="writes_to"),
            edge("e3", "logs-ref", "archiver", type="triggers"),
        ],
    )
    return [infra, app]


def arn_matcher(**overrides) -> ArnMatcherConfig:
    return ArnMatcherConfig(pattern="arn:aws:s3:::*", **overrides)


def create_request(**overrides) -> RollupCreateRequest:
    data: Dict[str, Any] = {
        "name": "Shared buckets",
        "repositoryIds": ["repo-infra", "repo-app"],
        "matchers": [{"type": "arn", "pattern": "arn:aws:s3:::*"}],
    }
    data.update(overrides)
    return RollupCreateRequest.model_validate(data)


def configuration(**overrides) -> RollupConfiguration:
    data: Dict[str, Any] = {
        "tenant_id": TENANT,
        "name": "Shared buckets",
        "repository_ids": ["repo-infra", "repo-app"],
        "matchers": [arn_matcher(), NameMatcherConfig(priority=10)],
    }
    data.update(overrides)
    return RollupConfiguration(**data)


class RecordingBroadcaster(Broadcast):
    """Keeps every published message, per channel, in publish order."""

    def __init__(self) -> None:
        self.messages: List[tuple] = []

    async def publish(self, channel: str, message: str) -> None:
        self.messages.append((channel, message))

    def subscribe(self, channel: str):
        raise NotImplementedError

    async def close(self) -> None:
        return None

    def events(self, type_prefix: str = "") -> List[Dict[str, Any]]:
        decoded = [json.loads(message) for _, message in self.messages]
        return [e for e in decoded if e["type"].startswith(type_prefix)]


class GatedGraphSource(GraphSource):
    """Blocks every load until ``release`` is set."""

    def __init__(self, inner: GraphSource) -> None:
        self.inner = inner
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def load_graph(self, tenant_id, repository_id, scan_id=None):
        self.entered.set()
        await self.release.wait()
        return await self.inner.load_graph(tenant_id, repository_id, scan_id)


class FlakyGraphSource(GraphSource):
    """Raises ``error`` for the first ``failures`` loads, then delegates."""

    def __init__(self, inner: GraphSource, failures: int, error: Exception) -> None:
        self.inner = inner
        self.failures = failures
        self.error = error
        self.calls = 0

    async def load_graph(self, tenant_id, repository_id, scan_id=None):
        self.calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise self.error
        return await self.inner.load_graph(tenant_id, repository_id, scan_id)
