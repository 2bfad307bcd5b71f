"""
BlastRadiusEngine - change impact over a rollup's aggregate graph

Breadth-first traversal from a set of seed nodes along dependency edges:

- depth 1 is direct impact, depth 2..maxDepth is indirect impact (with the
  path from the nearest seed)
- traversing into a repository the current node does not belong to counts
  as cross-repo impact, aggregated per (source repo, target repo, edge type)
- the summary scores impact as sum(DECAY_FACTOR ** depth) over impacted
  nodes and classifies risk from total and cross-repo impact
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Callable, Dict, FrozenSet, List, Optional, Tuple

from .errors import RollupBlastRadiusError
from .graph import RollupGraph
from .merge_engine import node_ref
from .types import BlastRadiusQuery, RiskLevel, utcnow

logger = logging.getLogger(__name__)

DECAY_FACTOR = 0.7


@dataclass(frozen=True)
class AnalysisNode:
    id: str
    type: str
    name: str
    repo_id: str  # primary repository (first in sorted provenance order)
    repo_ids: FrozenSet[str]
    is_merged: bool = False


@dataclass
class ImpactedNode:
    node_id: str
    node_type: str
    node_name: str
    repo_id: str
    repo_name: str
    depth: int
    path: Optional[List[str]] = None

    def to_dict(self) -> Dict:
        data = {
            "nodeId": self.node_id,
            "nodeType": self.node_type,
            "nodeName": self.node_name,
            "repoId": self.repo_id,
            "repoName": self.repo_name,
            "depth": self.depth,
        }
        if self.path is not None:
            data["path"] = list(self.path)
        return data


@dataclass
class CrossRepoImpact:
    source_repo_id: str
    source_repo_name: str
    target_repo_id: str
    target_repo_name: str
    edge_type: str
    impacted_nodes: int

    def to_dict(self) -> Dict:
        return {
            "sourceRepoId": self.source_repo_id,
            "sourceRepoName": self.source_repo_name,
            "targetRepoId": self.target_repo_id,
            "targetRepoName": self.target_repo_name,
            "edgeType": self.edge_type,
            "impactedNodes": self.impacted_nodes,
        }


@dataclass
class BlastRadiusSummary:
    total_impacted: int = 0
    direct_count: int = 0
    indirect_count: int = 0
    cross_repo_count: int = 0
    impact_by_type: Dict[str, int] = field(default_factory=dict)
    impact_by_repo: Dict[str, int] = field(default_factory=dict)
    impact_by_depth: Dict[str, int] = field(default_factory=dict)
    risk_level: RiskLevel = RiskLevel.LOW
    impact_score: float = 0.0

    def to_dict(self) -> Dict:
        return {
            "totalImpacted": self.total_impacted,
            "directCount": self.direct_count,
            "indirectCount": self.indirect_count,
            "crossRepoCount": self.cross_repo_count,
            "impactByType": dict(self.impact_by_type),
            "impactByRepo": dict(self.impact_by_repo),
            "impactByDepth": dict(self.impact_by_depth),
            "riskLevel": self.risk_level.value,
            "impactScore": self.impact_score,
        }


@dataclass
class BlastRadiusResult:
    execution_id: str
    query: BlastRadiusQuery
    rollup_id: str = ""
    direct_impact: List[ImpactedNode] = field(default_factory=list)
    indirect_impact: List[ImpactedNode] = field(default_factory=list)
    cross_repo_impact: List[CrossRepoImpact] = field(default_factory=list)
    summary: BlastRadiusSummary = field(default_factory=BlastRadiusSummary)
    calculated_at: datetime = field(default_factory=utcnow)
    cached: bool = False

    def to_dict(self) -> Dict:
        return {
            "rollupId": self.rollup_id,
            "executionId": self.execution_id,
            "query": self.query.to_json_dict(),
            "directImpact": [n.to_dict() for n in self.direct_impact],
            "indirectImpact": [n.to_dict() for n in self.indirect_impact],
            "crossRepoImpact": [c.to_dict() for c in self.cross_repo_impact],
            "summary": self.summary.to_dict(),
            "calculatedAt": self.calculated_at.isoformat(),
            "cached": self.cached,
        }


def classify_risk(total_impacted: int, cross_repo_count: int) -> RiskLevel:
    """First matching row wins."""
    if total_impacted > 100 and cross_repo_count > 3:
        return RiskLevel.CRITICAL
    if total_impacted > 50 or cross_repo_count > 2:
        return RiskLevel.HIGH
    if total_impacted > 10 or cross_repo_count > 0:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


@dataclass
class _AnalysisGraph:
    nodes: Dict[str, AnalysisNode]
    # node id -> [(target id, edge type, crosses repositories)], sorted for deterministic traversal
    forward: Dict[str, List[Tuple[str, str, bool]]]
    # source node id -> aggregate ids containing it
    aliases: Dict[str, List[str]]
    repository_names: Dict[str, str]


@dataclass
class _CacheEntry:
    result: BlastRadiusResult
    expires_at: float


CacheKey = Tuple[str, Tuple[str, ...], int, Optional[Tuple[str, ...]], bool, bool]


class BlastRadiusEngine:
    """
    Blast radius analysis over registered aggregate graphs.

    Graphs are registered per execution; queries are read-only and may run
    concurrently. Results are cached per (execution, seeds, options) for
    ``cache_ttl_seconds``.
    """

    def __init__(
        self,
        cache_ttl_seconds: float = 3600,
        max_cache_entries: int = 256,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.cache_ttl_seconds = cache_ttl_seconds
        self.max_cache_entries = max_cache_entries
        self._clock = clock
        self._graphs: Dict[str, _AnalysisGraph] = {}
        self._cache: Dict[CacheKey, _CacheEntry] = {}
        self._lock = threading.Lock()

    def register_graph(
        self,
        graph: RollupGraph,
        repository_names: Optional[Dict[str, str]] = None,
    ) -> None:
        nodes: Dict[str, AnalysisNode] = {}
        aliases: Dict[str, List[str]] = {}

        for merged in graph.merged_nodes:
            repos = sorted(set(merged.source_repo_ids))
            nodes[merged.id] = AnalysisNode(
                id=merged.id,
                type=merged.type,
                name=merged.name,
                repo_id=repos[0],
                repo_ids=frozenset(repos),
                is_merged=merged.is_merged,
            )
            for source_id in merged.source_node_ids:
                aliases.setdefault(source_id, []).append(merged.id)

        for node in graph.passthrough_nodes:
            ref = node_ref(node.repository_id, node.id)
            nodes[ref] = AnalysisNode(
                id=ref,
                type=node.type,
                name=node.name,
                repo_id=node.repository_id,
                repo_ids=frozenset({node.repository_id}),
            )
            aliases.setdefault(node.id, []).append(ref)

        forward: Dict[str, List[Tuple[str, str, bool]]] = {}
        for edge in graph.edges:
            if edge.source in nodes and edge.target in nodes:
                cross = edge.metadata.get("isCrossRepoEdge")
                if cross is None:
                    cross = nodes[edge.source].repo_ids != nodes[edge.target].repo_ids
                forward.setdefault(edge.source, []).append(
                    (edge.target, edge.type, bool(cross))
                )
        for targets in forward.values():
            targets.sort()

        with self._lock:
            self._graphs[graph.execution_id] = _AnalysisGraph(
                nodes=nodes,
                forward=forward,
                aliases=aliases,
                repository_names=dict(repository_names or {}),
            )
            self._invalidate(graph.execution_id)
        logger.info(
            f"Registered blast radius graph for execution {graph.execution_id}: "
            f"{len(nodes)} nodes, {sum(len(t) for t in forward.values())} edges"
        )

    def is_registered(self, execution_id: str) -> bool:
        return execution_id in self._graphs

    def unregister(self, execution_id: str) -> None:
        with self._lock:
            self._graphs.pop(execution_id, None)
            self._invalidate(execution_id)

    def clear_cache(self) -> None:
        with self._lock:
            self._cache.clear()

    def _invalidate(self, execution_id: str) -> None:
        for key in [k for k in self._cache if k[0] == execution_id]:
            del self._cache[key]

    @staticmethod
    def _cache_key(execution_id: str, query: BlastRadiusQuery) -> CacheKey:
        return (
            execution_id,
            tuple(sorted(set(query.node_ids))),
            query.max_depth,
            tuple(sorted(set(query.edge_types))) if query.edge_types else None,
            query.include_cross_repo,
            query.include_indirect,
        )

    def analyze(self, execution_id: str, query: BlastRadiusQuery) -> BlastRadiusResult:
        graph = self._graphs.get(execution_id)
        if graph is None:
            raise RollupBlastRadiusError(
                f"No graph registered for execution {execution_id}",
                details={"executionId": execution_id},
            )

        key = self._cache_key(execution_id, query)
        now = self._clock()
        with self._lock:
            entry = self._cache.get(key)
            if entry is not None:
                if entry.expires_at > now:
                    return replace(entry.result, cached=True)
                del self._cache[key]

        result = self._traverse(execution_id, graph, query)

        with self._lock:
            if len(self._cache) >= self.max_cache_entries:
                oldest = min(self._cache, key=lambda k: self._cache[k].expires_at)
                del self._cache[oldest]
            self._cache[key] = _CacheEntry(
                result=result, expires_at=now + self.cache_ttl_seconds
            )
        return result

    def _resolve_seeds(self, graph: _AnalysisGraph, node_ids: List[str]) -> List[str]:
        seeds: List[str] = []
        missing: List[str] = []
        for node_id in sorted(set(node_ids)):
            if node_id in graph.nodes:
                seeds.append(node_id)
            elif len(graph.aliases.get(node_id, [])) == 1:
                seeds.append(graph.aliases[node_id][0])
            else:
                missing.append(node_id)
        if missing:
            raise RollupBlastRadiusError(
                f"Nodes not found in rollup graph: {', '.join(missing)}",
                details={"missingNodeIds": missing},
            )
        return sorted(set(seeds))

    def _traverse(
        self, execution_id: str, graph: _AnalysisGraph, query: BlastRadiusQuery
    ) -> BlastRadiusResult:
        seeds = self._resolve_seeds(graph, query.node_ids)
        edge_types = set(query.edge_types) if query.edge_types else None
        max_depth = query.max_depth if query.include_indirect else min(query.max_depth, 1)
        names = graph.repository_names

        result = BlastRadiusResult(execution_id=execution_id, query=query)
        cross_counts: Dict[Tuple[str, str, str], int] = {}
        visited = set(seeds)
        queue = deque((seed, 0, [seed]) for seed in seeds)
        score = 0.0

        while queue:
            current_id, depth, path = queue.popleft()
            if depth >= max_depth:
                continue
            current = graph.nodes[current_id]
            for target_id, edge_type, cross in graph.forward.get(current_id, []):
                if edge_types is not None and edge_type not in edge_types:
                    continue
                if target_id in visited:
                    continue
                target = graph.nodes[target_id]

                if cross:
                    if not query.include_cross_repo:
                        continue
                    entered = target.repo_ids - current.repo_ids
                    left = current.repo_ids - target.repo_ids
                    source_repo = min(left) if left and not entered else current.repo_id
                    target_repo = min(entered) if entered else target.repo_id
                    triple = (source_repo, target_repo, edge_type)
                    cross_counts[triple] = cross_counts.get(triple, 0) + 1

                visited.add(target_id)
                target_depth = depth + 1
                target_path = path + [target_id]
                score += DECAY_FACTOR**target_depth

                impacted = ImpactedNode(
                    node_id=target.id,
                    node_type=target.type,
                    node_name=target.name,
                    repo_id=target.repo_id,
                    repo_name=names.get(target.repo_id, target.repo_id),
                    depth=target_depth,
                )
                if target_depth == 1:
                    result.direct_impact.append(impacted)
                else:
                    impacted.path = target_path
                    result.indirect_impact.append(impacted)
                queue.append((target_id, target_depth, target_path))

        for (source_repo, target_repo, edge_type), count in sorted(cross_counts.items()):
            result.cross_repo_impact.append(
                CrossRepoImpact(
                    source_repo_id=source_repo,
                    source_repo_name=names.get(source_repo, source_repo),
                    target_repo_id=target_repo,
                    target_repo_name=names.get(target_repo, target_repo),
                    edge_type=edge_type,
                    impacted_nodes=count,
                )
            )

        summary = result.summary
        summary.direct_count = len(result.direct_impact)
        summary.indirect_count = len(result.indirect_impact)
        summary.total_impacted = summary.direct_count + summary.indirect_count
        summary.cross_repo_count = sum(c.impacted_nodes for c in result.cross_repo_impact)
        for impacted in result.direct_impact + result.indirect_impact:
            summary.impact_by_type[impacted.node_type] = (
                summary.impact_by_type.get(impacted.node_type, 0) + 1
            )
            summary.impact_by_repo[impacted.repo_id] = (
                summary.impact_by_repo.get(impacted.repo_id, 0) + 1
            )
            depth_key = str(impacted.depth)
            summary.impact_by_depth[depth_key] = summary.impact_by_depth.get(depth_key, 0) + 1
        summary.risk_level = classify_risk(summary.total_impacted, summary.cross_repo_count)
        summary.impact_score = round(score, 2)

        logger.debug(
            f"Blast radius for {len(seeds)} seeds on {execution_id}: "
            f"{summary.total_impacted} impacted, risk={summary.risk_level.value}"
        )
        return result
