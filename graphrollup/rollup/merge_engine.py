"""
Merge engine.

Accepted matches are undirected edges over (repository id, node id) keys;
union-find turns them into connected components so a chain A~B (arn) and
B~C (name) merges {A, B, C} although A and C were never compared.

Each component with two or more nodes becomes one ``MergedNode``. Sources
are ordered by (repository id, node id) before conflict resolution, which
makes the resolved metadata independent of match or scheduling order.
"""

from __future__ import annotations

import json
import logging
import uuid
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from .cancellation import CancellationToken
from .errors import RollupLimitExceededError, RollupMergeConflictError
from .graph import GraphEdge, GraphNode
from .types import (
    STRATEGY_ORDER,
    ConflictResolution,
    MatchInfo,
    MatchResult,
    MergedNode,
    MergedNodeLocation,
    MergeOptions,
    utcnow,
)
from .union_find import UnionFind

logger = logging.getLogger(__name__)

NodeKey = Tuple[str, str]

# Stable namespace so identical components always receive identical ids
MERGED_ID_NAMESPACE = uuid.UUID("6f1c1d1e-5b1a-4f0e-9c52-2a8e3f4b7d10")
PROVENANCE_KEY = "_provenance"


def node_ref(repository_id: str, node_id: str) -> str:
    """Id of an unmatched node inside the aggregate graph."""
    return f"{repository_id}:{node_id}"


def merged_node_id(keys: Sequence[NodeKey]) -> str:
    digest = "|".join(f"{repo}:{node}" for repo, node in sorted(keys))
    return f"merged_{uuid.uuid5(MERGED_ID_NAMESPACE, digest)}"


def _fingerprint(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=str)


@dataclass
class MergeConflict:
    """A metadata attribute whose values disagree across a component's sources"""

    attribute: str
    node_keys: List[NodeKey]
    values: List[Any]
    resolution: ConflictResolution
    resolved_value: Any = None
    merged_node_id: Optional[str] = None
    skipped: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attribute": self.attribute,
            "nodeIds": [node_ref(repo, node) for repo, node in self.node_keys],
            "values": self.values,
            "resolution": self.resolution.value,
            "resolvedValue": self.resolved_value,
            "mergedNodeId": self.merged_node_id,
            "skipped": self.skipped,
        }


@dataclass
class MergeStats:
    nodes_before: int = 0
    nodes_after: int = 0
    edges_before: int = 0
    edges_after: int = 0
    cross_repo_edges: int = 0
    conflicts: int = 0
    components_merged: int = 0
    components_skipped: int = 0


@dataclass
class MergeResult:
    merged_nodes: List[MergedNode] = field(default_factory=list)
    # Unmatched nodes kept visible in the aggregate (preserveSourceInfo)
    passthrough_nodes: List[GraphNode] = field(default_factory=list)
    edges: List[GraphEdge] = field(default_factory=list)
    # (repository id, node id) -> aggregate node id
    node_id_map: Dict[NodeKey, str] = field(default_factory=dict)
    conflicts: List[MergeConflict] = field(default_factory=list)
    stats: MergeStats = field(default_factory=MergeStats)

    @property
    def node_count(self) -> int:
        return len(self.merged_nodes) + len(self.passthrough_nodes)


@dataclass
class _ComponentOutcome:
    keys: List[NodeKey]
    merged: Optional[MergedNode]
    conflicts: List[MergeConflict]


def resolve_values(
    values: List[Any], resolution: ConflictResolution, deep_merge: bool = False
) -> Any:
    """Resolve disagreeing values given in (repository id, node id) order."""
    if resolution == ConflictResolution.FIRST:
        return values[0]
    if resolution == ConflictResolution.LAST:
        return values[-1]
    if resolution == ConflictResolution.MERGE:
        if all(isinstance(v, list) for v in values):
            seen: Set[str] = set()
            union: List[Any] = []
            for v in values:
                for item in v:
                    fp = _fingerprint(item)
                    if fp not in seen:
                        seen.add(fp)
                        union.append(item)
            return union
        if all(isinstance(v, dict) for v in values):
            return _merge_objects(values, deep_merge)
        return values[0]
    raise ValueError(f"Unresolvable conflict policy: {resolution}")


def _merge_objects(values: List[Dict[str, Any]], deep: bool) -> Dict[str, Any]:
    # Field-by-field; first value wins on nested conflicts unless deep merging
    merged: Dict[str, Any] = {}
    keys: List[str] = []
    for v in values:
        for key in v:
            if key not in merged:
                merged[key] = v[key]
                keys.append(key)
    if deep:
        for key in keys:
            nested = [v[key] for v in values if key in v]
            if len(nested) > 1 and len({_fingerprint(n) for n in nested}) > 1:
                merged[key] = resolve_values(nested, ConflictResolution.MERGE, deep)
    return merged


class MergeEngine:
    """Groups matches into connected components and builds merged nodes."""

    def __init__(self, max_workers: int = 4) -> None:
        self.max_workers = max(1, max_workers)

    def merge(
        self,
        nodes: Sequence[GraphNode],
        edges_by_repo: Dict[str, Sequence[GraphEdge]],
        matches: Sequence[MatchResult],
        options: MergeOptions,
        *,
        max_nodes: Optional[int] = None,
        token: Optional[CancellationToken] = None,
        merged_at: Optional[datetime] = None,
    ) -> MergeResult:
        merged_at = merged_at or utcnow()
        node_index: Dict[NodeKey, GraphNode] = {node.key: node for node in nodes}

        uf: UnionFind[NodeKey] = UnionFind()
        matches_by_root: Dict[NodeKey, List[MatchResult]] = {}
        for m in matches:
            a = (m.source_repo_id, m.source_node_id)
            b = (m.target_repo_id, m.target_node_id)
            if a not in node_index or b not in node_index:
                continue
            uf.union(a, b)
        for m in matches:
            a = (m.source_repo_id, m.source_node_id)
            if a in uf:
                matches_by_root.setdefault(uf.find(a), []).append(m)

        components = uf.components(min_size=2)
        outcomes = self._merge_components(
            components, node_index, matches_by_root, uf, options, merged_at, token
        )

        result = MergeResult()
        result.stats.nodes_before = len(nodes)
        merged_keys: Set[NodeKey] = set()
        for outcome in outcomes:
            result.conflicts.extend(outcome.conflicts)
            if outcome.merged is None:
                result.stats.components_skipped += 1
                continue
            result.merged_nodes.append(outcome.merged)
            result.stats.components_merged += 1
            for key in outcome.keys:
                result.node_id_map[key] = outcome.merged.id
                merged_keys.add(key)

        if options.preserve_source_info:
            for node in sorted(nodes, key=lambda n: n.key):
                if node.key not in merged_keys:
                    result.passthrough_nodes.append(node)
                    result.node_id_map[node.key] = node_ref(*node.key)

        result.stats.conflicts = len(result.conflicts)
        result.stats.nodes_after = result.node_count
        limit = options.max_nodes if options.max_nodes is not None else max_nodes
        if limit is not None and result.node_count > limit:
            raise RollupLimitExceededError("nodes", result.node_count, limit)

        self._remap_edges(result, node_index, edges_by_repo, options)
        logger.info(
            f"Merged {result.stats.nodes_before} nodes into {len(result.merged_nodes)} merged "
            f"and {len(result.passthrough_nodes)} passthrough nodes; "
            f"{result.stats.cross_repo_edges} cross-repo edges, {result.stats.conflicts} conflicts"
        )
        return result

    def _merge_components(
        self,
        components: List[List[NodeKey]],
        node_index: Dict[NodeKey, GraphNode],
        matches_by_root: Dict[NodeKey, List[MatchResult]],
        uf: UnionFind[NodeKey],
        options: MergeOptions,
        merged_at: datetime,
        token: Optional[CancellationToken],
    ) -> List[_ComponentOutcome]:
        def run(keys: List[NodeKey]) -> _ComponentOutcome:
            if token is not None:
                token.raise_if_cancelled()
            group_matches = matches_by_root.get(uf.find(keys[0]), [])
            return self.merge_component(
                [node_index[k] for k in keys], group_matches, options, merged_at
            )

        if self.max_workers == 1 or len(components) <= 1:
            outcomes = [run(keys) for keys in components]
        else:
            with ThreadPoolExecutor(
                max_workers=self.max_workers, thread_name_prefix="rollup-merge"
            ) as pool:
                outcomes = list(pool.map(run, components))
        # Component assignment defines the result; order by smallest member
        outcomes.sort(key=lambda o: o.keys[0])
        return outcomes

    def merge_component(
        self,
        nodes: Sequence[GraphNode],
        matches: Sequence[MatchResult],
        options: MergeOptions,
        merged_at: Optional[datetime] = None,
    ) -> _ComponentOutcome:
        ordered = sorted(nodes, key=lambda n: n.key)
        keys = [n.key for n in ordered]
        merged_id = merged_node_id(keys)
        resolution = options.conflict_resolution

        metadata, conflicts = self._merge_metadata(ordered, options)
        for conflict in conflicts:
            conflict.merged_node_id = merged_id

        if resolution == ConflictResolution.ERROR and conflicts:
            for conflict in conflicts:
                conflict.skipped = True
                conflict.merged_node_id = None
            if options.fail_on_conflict:
                first = conflicts[0]
                raise RollupMergeConflictError(
                    first.attribute,
                    first.values,
                    [node_ref(repo, node) for repo, node in keys],
                )
            logger.warning(
                f"Skipped merging component of {len(keys)} nodes: "
                f"{len(conflicts)} conflicting attributes"
            )
            return _ComponentOutcome(keys=keys, merged=None, conflicts=conflicts)

        if options.preserve_source_info:
            metadata[PROVENANCE_KEY] = {
                "sourceNodeIds": [n.id for n in ordered],
                "sourceRepoIds": [n.repository_id for n in ordered],
                "mergedAt": (merged_at or utcnow()).isoformat(),
            }

        locations = [
            MergedNodeLocation(
                repo_id=n.repository_id,
                node_id=n.id,
                file=n.location.file,
                line_start=n.location.line_start,
                line_end=n.location.line_end,
            )
            for n in ordered
            if n.location is not None
        ]

        merged = MergedNode(
            id=merged_id,
            source_node_ids=[n.id for n in ordered],
            source_repo_ids=[n.repository_id for n in ordered],
            type=ordered[0].type,
            name=self._resolve_name(ordered),
            locations=locations,
            metadata=metadata,
            match_info=self._match_info(matches),
        )
        return _ComponentOutcome(keys=keys, merged=merged, conflicts=conflicts)

    def _merge_metadata(
        self, ordered: Sequence[GraphNode], options: MergeOptions
    ) -> Tuple[Dict[str, Any], List[MergeConflict]]:
        merged: Dict[str, Any] = {}
        conflicts: List[MergeConflict] = []
        attributes: List[str] = []
        for node in ordered:
            for key in node.metadata:
                if key not in attributes:
                    attributes.append(key)

        for attribute in attributes:
            holders = [n for n in ordered if attribute in n.metadata]
            values = [n.metadata[attribute] for n in holders]
            if len({_fingerprint(v) for v in values}) == 1:
                merged[attribute] = values[0]
                continue
            conflict = MergeConflict(
                attribute=attribute,
                node_keys=[n.key for n in holders],
                values=values,
                resolution=options.conflict_resolution,
            )
            if options.conflict_resolution != ConflictResolution.ERROR:
                conflict.resolved_value = resolve_values(
                    values, options.conflict_resolution, options.deep_merge
                )
                merged[attribute] = conflict.resolved_value
            conflicts.append(conflict)
        return merged, conflicts

    @staticmethod
    def _resolve_name(ordered: Sequence[GraphNode]) -> str:
        counts = Counter(n.name for n in ordered)
        best = max(counts.values())
        # Most common; ties go to the earliest source
        for node in ordered:
            if counts[node.name] == best:
                return node.name
        return ordered[0].name

    @staticmethod
    def _match_info(matches: Sequence[MatchResult]) -> Optional[MatchInfo]:
        if not matches:
            return None
        counts = Counter(m.strategy for m in matches)
        dominant = min(
            counts, key=lambda s: (-counts[s], STRATEGY_ORDER.index(s))
        )
        return MatchInfo(
            strategy=dominant,
            confidence=max(m.confidence for m in matches),
            match_count=len(matches),
        )

    def _remap_edges(
        self,
        result: MergeResult,
        node_index: Dict[NodeKey, GraphNode],
        edges_by_repo: Dict[str, Sequence[GraphEdge]],
        options: MergeOptions,
    ) -> None:
        # Node ids unique across repositories resolve edges that point outside their repo
        owners: Dict[str, List[str]] = {}
        for repo, node in node_index:
            owners.setdefault(node, []).append(repo)

        repo_sets: Dict[str, Set[str]] = {
            m.id: set(m.source_repo_ids) for m in result.merged_nodes
        }
        for node in result.passthrough_nodes:
            repo_sets[node_ref(*node.key)] = {node.repository_id}

        def resolve(repo: str, node_id: str) -> Optional[NodeKey]:
            if (repo, node_id) in node_index:
                return (repo, node_id)
            candidates = owners.get(node_id, [])
            return (candidates[0], node_id) if len(candidates) == 1 else None

        seen: Set[Tuple[str, str, str]] = set()
        edges_before = 0
        for repo in sorted(edges_by_repo):
            for edge in edges_by_repo[repo]:
                edges_before += 1
                source_key = resolve(repo, edge.source)
                target_key = resolve(repo, edge.target)
                if source_key is None or target_key is None:
                    continue
                new_source = result.node_id_map.get(source_key)
                new_target = result.node_id_map.get(target_key)
                if new_source is None or new_target is None:
                    continue
                # Merging can collapse an edge onto a single node
                if new_source == new_target:
                    continue
                # Only edges between different original repositories are optional
                if source_key[0] != target_key[0] and not options.create_cross_repo_edges:
                    continue
                dedupe_key = (new_source, new_target, edge.type)
                if dedupe_key in seen:
                    continue
                seen.add(dedupe_key)

                is_cross_repo = (
                    source_key[0] != target_key[0]
                    or repo_sets[new_source] != repo_sets[new_target]
                )

                metadata = dict(edge.metadata)
                if options.preserve_source_info:
                    metadata.update(
                        {
                            "originalSourceId": edge.source,
                            "originalTargetId": edge.target,
                            "sourceRepositoryId": source_key[0],
                            "targetRepositoryId": target_key[0],
                        }
                    )
                metadata["isCrossRepoEdge"] = is_cross_repo
                if is_cross_repo:
                    result.stats.cross_repo_edges += 1

                result.edges.append(
                    GraphEdge(
                        id=f"edge_{uuid.uuid5(MERGED_ID_NAMESPACE, '|'.join(dedupe_key))}",
                        source=new_source,
                        target=new_target,
                        type=edge.type,
                        confidence=edge.confidence,
                        implicit=edge.implicit,
                        metadata=metadata,
                    )
                )
        result.stats.edges_before = edges_before
        result.stats.edges_after = len(result.edges)
