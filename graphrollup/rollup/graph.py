"""
Per-repository dependency graph model and the sources that load it.

Graphs are produced by the scanning pipeline; the rollup engine only reads
them. ``GraphSource`` is the narrow interface the executor consumes:
``InMemoryGraphSource`` serves registered graphs (dev, tests) and
``HttpGraphSource`` fetches them from the scanning API.
"""

from __future__ import annotations

import abc
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import httpx

from .errors import (
    GraphSourceUnavailableError,
    RepositoryNotFoundError,
    ScanNotFoundError,
)
from .types import MergedNode

logger = logging.getLogger(__name__)

_NODE_FIELDS = {"id", "type", "name", "location", "metadata", "repositoryId"}
_EDGE_FIELDS = {
    "id",
    "source",
    "target",
    "type",
    "confidence",
    "implicit",
    "metadata",
    "label",
}


@dataclass(frozen=True)
class NodeLocation:
    """Source file location of a node"""

    file: str
    line_start: int = 0
    line_end: int = 0
    column_start: Optional[int] = None
    column_end: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "file": self.file,
            "lineStart": self.line_start,
            "lineEnd": self.line_end,
        }
        if self.column_start is not None:
            data["columnStart"] = self.column_start
        if self.column_end is not None:
            data["columnEnd"] = self.column_end
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NodeLocation":
        return cls(
            file=str(data.get("file", "")),
            line_start=int(data.get("lineStart", data.get("line_start", 0)) or 0),
            line_end=int(data.get("lineEnd", data.get("line_end", 0)) or 0),
            column_start=data.get("columnStart"),
            column_end=data.get("columnEnd"),
        )


@dataclass
class GraphNode:
    """A resource, module, or workload node in one repository's graph"""

    id: str
    type: str
    name: str
    repository_id: str = ""
    location: Optional[NodeLocation] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> Tuple[str, str]:
        """Globally unique identity across repositories."""
        return (self.repository_id, self.id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "name": self.name,
            "repositoryId": self.repository_id,
            "location": self.location.to_dict() if self.location else None,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], repository_id: str = "") -> "GraphNode":
        # Type-specific top-level attributes (resourceType, provider, namespace, ...)
        # are folded into metadata so matchers read a single map.
        metadata = dict(data.get("metadata") or {})
        for key, value in data.items():
            if key not in _NODE_FIELDS and key not in metadata:
                metadata[key] = value
        location = data.get("location")
        return cls(
            id=str(data["id"]),
            type=str(data.get("type", "unknown")),
            name=str(data.get("name", "")),
            repository_id=str(data.get("repositoryId") or repository_id),
            location=NodeLocation.from_dict(location) if location else None,
            metadata=metadata,
        )


@dataclass
class GraphEdge:
    """A dependency edge between two nodes"""

    id: str
    source: str
    target: str
    type: str
    confidence: float = 100.0
    implicit: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "source": self.source,
            "target": self.target,
            "type": self.type,
            "confidence": self.confidence,
            "implicit": self.implicit,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GraphEdge":
        metadata = dict(data.get("metadata") or {})
        for key, value in data.items():
            if key not in _EDGE_FIELDS and key not in metadata:
                metadata[key] = value
        confidence = data.get("confidence", metadata.get("confidence", 100))
        implicit = data.get("implicit", metadata.get("implicit", False))
        return cls(
            id=str(data["id"]),
            source=str(data["source"]),
            target=str(data["target"]),
            type=str(data.get("type", "depends_on")),
            confidence=float(confidence),
            implicit=bool(implicit),
            metadata=metadata,
        )


@dataclass
class RepositoryGraph:
    """Node and edge sets of one repository at one scan"""

    repository_id: str
    scan_id: Optional[str] = None
    name: Optional[str] = None
    nodes: List[GraphNode] = field(default_factory=list)
    edges: List[GraphEdge] = field(default_factory=list)

    def __post_init__(self) -> None:
        for node in self.nodes:
            if not node.repository_id:
                node.repository_id = self.repository_id

    @classmethod
    def from_dict(
        cls, data: Dict[str, Any], repository_id: str, scan_id: Optional[str] = None
    ) -> "RepositoryGraph":
        return cls(
            repository_id=repository_id,
            scan_id=data.get("scanId") or scan_id,
            name=data.get("repositoryName"),
            nodes=[GraphNode.from_dict(n, repository_id) for n in data.get("nodes", [])],
            edges=[GraphEdge.from_dict(e) for e in data.get("edges", [])],
        )


class GraphSource(abc.ABC):
    """Loads the graph of one repository at a given scan ("latest" when None)."""

    @abc.abstractmethod
    async def load_graph(
        self, tenant_id: str, repository_id: str, scan_id: Optional[str] = None
    ) -> RepositoryGraph:
        ...

    async def close(self) -> None:
        return None


class InMemoryGraphSource(GraphSource):
    """Serves graphs registered per (tenant, repository, scan)."""

    def __init__(self) -> None:
        self._graphs: Dict[Tuple[str, str], Dict[str, RepositoryGraph]] = {}
        self._latest: Dict[Tuple[str, str], str] = {}

    def add_graph(self, tenant_id: str, graph: RepositoryGraph) -> None:
        key = (tenant_id, graph.repository_id)
        scan_id = graph.scan_id or f"scan-{len(self._graphs.get(key, {})) + 1}"
        graph.scan_id = scan_id
        self._graphs.setdefault(key, {})[scan_id] = graph
        self._latest[key] = scan_id

    async def load_graph(
        self, tenant_id: str, repository_id: str, scan_id: Optional[str] = None
    ) -> RepositoryGraph:
        key = (tenant_id, repository_id)
        scans = self._graphs.get(key)
        if not scans:
            raise RepositoryNotFoundError(repository_id)
        resolved = scan_id or self._latest[key]
        graph = scans.get(resolved)
        if graph is None:
            raise ScanNotFoundError(repository_id, scan_id)
        return graph


class HttpGraphSource(GraphSource):
    """Fetches repository graphs from the scanning API."""

    def __init__(
        self,
        base_url: str,
        *,
        token: Optional[str] = None,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url, headers=headers, timeout=timeout
        )

    async def load_graph(
        self, tenant_id: str, repository_id: str, scan_id: Optional[str] = None
    ) -> RepositoryGraph:
        path = f"/repositories/{repository_id}/scans/{scan_id or 'latest'}/graph"
        try:
            response = await self._client.get(path, headers={"X-Tenant-Id": tenant_id})
        except httpx.HTTPError as e:
            logger.warning(f"Graph source request failed for {repository_id}: {e}")
            raise GraphSourceUnavailableError(
                f"Graph source unreachable: {e}",
                details={"repositoryId": repository_id, "scanId": scan_id},
            ) from e

        if response.status_code == 404:
            if scan_id:
                raise ScanNotFoundError(repository_id, scan_id)
            raise RepositoryNotFoundError(repository_id)
        if response.status_code >= 500:
            raise GraphSourceUnavailableError(
                f"Graph source returned {response.status_code}",
                details={"repositoryId": repository_id, "scanId": scan_id},
            )
        if response.status_code >= 400:
            raise GraphSourceUnavailableError(
                f"Graph source rejected request with {response.status_code}",
                details={"repositoryId": repository_id, "scanId": scan_id},
                retryable=False,
            )

        graph = RepositoryGraph.from_dict(response.json(), repository_id, scan_id)
        logger.debug(
            f"Loaded graph for {repository_id} scan={graph.scan_id}: "
            f"{len(graph.nodes)} nodes, {len(graph.edges)} edges"
        )
        return graph

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


@dataclass
class RollupGraph:
    """The aggregate graph stored for a completed execution"""

    execution_id: str
    merged_nodes: List[MergedNode] = field(default_factory=list)
    passthrough_nodes: List[GraphNode] = field(default_factory=list)
    edges: List[GraphEdge] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "executionId": self.execution_id,
            "mergedNodes": [n.to_dict() for n in self.merged_nodes],
            "passthroughNodes": [n.to_dict() for n in self.passthrough_nodes],
            "edges": [e.to_dict() for e in self.edges],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RollupGraph":
        return cls(
            execution_id=data["executionId"],
            merged_nodes=[MergedNode.from_dict(n) for n in data.get("mergedNodes", [])],
            passthrough_nodes=[
                GraphNode.from_dict(n) for n in data.get("passthroughNodes", [])
            ],
            edges=[GraphEdge.from_dict(e) for e in data.get("edges", [])],
        )
