"""
Matching coordinator.

Nodes from all participating repositories are blocked by a coarse key
(node type plus resource type / provider) and only nodes of the same block
coming from different repositories are compared. Every enabled matcher runs
on each candidate pair; results below the matcher's ``minConfidence`` are
discarded and the pair keeps a single winner: highest confidence, then
higher matcher priority, then the fixed strategy order.

Blocks are independent, so they are matched in a thread pool; the final
result is sorted so it does not depend on scheduling order.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from itertools import combinations
from typing import Callable, Dict, Hashable, Iterable, List, Optional, Sequence, Tuple

from .cancellation import CancellationToken
from .graph import GraphNode
from .matchers.base import BaseMatcher, MatchCandidate
from .types import STRATEGY_ORDER, MatchResult

logger = logging.getLogger(__name__)

PairKey = Tuple[Tuple[str, str], Tuple[str, str]]
_STRATEGY_RANK = {strategy: index for index, strategy in enumerate(STRATEGY_ORDER)}


@dataclass
class Block:
    key: Tuple[str, str]
    nodes: List[GraphNode] = field(default_factory=list)

    @property
    def repository_count(self) -> int:
        return len({node.repository_id for node in self.nodes})


@dataclass
class MatchingResult:
    matches: List[MatchResult]
    matches_by_strategy: Dict[str, int]
    blocks_processed: int = 0
    candidate_pairs: int = 0

    @property
    def matched_node_keys(self) -> set:
        keys = set()
        for m in self.matches:
            keys.add((m.source_repo_id, m.source_node_id))
            keys.add((m.target_repo_id, m.target_node_id))
        return keys


def blocking_key(node: GraphNode) -> Tuple[str, str]:
    """Coarse discriminating key: node type plus resource type or provider."""
    metadata = node.metadata
    qualifier = (
        metadata.get("resourceType")
        or metadata.get("resource_type")
        or metadata.get("provider")
        or ""
    )
    return (node.type, str(qualifier))


def filter_nodes(
    nodes: Iterable[GraphNode],
    include_types: Optional[Sequence[str]] = None,
    exclude_types: Optional[Sequence[str]] = None,
) -> List[GraphNode]:
    include = set(include_types) if include_types else None
    exclude = set(exclude_types or ())
    return [
        node
        for node in nodes
        if (include is None or node.type in include) and node.type not in exclude
    ]


def is_better(candidate: MatchResult, current: MatchResult) -> bool:
    """Per-pair winner ordering."""
    return _rank(candidate) > _rank(current)


def _rank(result: MatchResult) -> Tuple[float, int, int]:
    return (result.confidence, result.priority, -_STRATEGY_RANK[result.strategy])


class MatchingCoordinator:
    """
    Runs enabled matchers over blocked candidate pairs.

    ``match`` is the one-shot entry point; the executor uses ``build_blocks``,
    ``match_blocks`` and ``finalize`` so it can report progress and observe
    cancellation between batches of blocks.
    """

    def __init__(
        self,
        matchers: Sequence[BaseMatcher],
        max_workers: int = 4,
    ) -> None:
        self.matchers = [m for m in matchers if m.is_enabled()]
        self.max_workers = max(1, max_workers)

    def build_blocks(self, nodes: Iterable[GraphNode]) -> List[Block]:
        blocks: Dict[Tuple[str, str], Block] = {}
        for node in nodes:
            key = blocking_key(node)
            block = blocks.get(key)
            if block is None:
                block = blocks[key] = Block(key=key)
            block.nodes.append(node)
        # Single-repository blocks can never produce a cross-repository match
        comparable = [b for b in blocks.values() if b.repository_count >= 2]
        comparable.sort(key=lambda b: b.key)
        logger.debug(
            f"Built {len(blocks)} blocks, {len(comparable)} span multiple repositories"
        )
        return comparable

    def match_block(self, block: Block) -> Tuple[Dict[PairKey, MatchResult], int]:
        best: Dict[PairKey, MatchResult] = {}
        pairs_compared = 0
        for matcher in self.matchers:
            candidates = [
                c for c in (matcher.extract(node) for node in block.nodes) if c is not None
            ]
            if len(candidates) < 2:
                continue
            for source, target in self._candidate_pairs(matcher, candidates):
                pairs_compared += 1
                score = matcher.compare(source, target)
                if score is None or score.confidence < matcher.min_confidence:
                    continue
                result = MatchResult(
                    source_node_id=source.node.id,
                    source_repo_id=source.node.repository_id,
                    target_node_id=target.node.id,
                    target_repo_id=target.node.repository_id,
                    strategy=matcher.strategy,
                    confidence=max(0, min(100, score.confidence)),
                    matched_attribute=score.matched_attribute,
                    source_value=score.source_value,
                    target_value=score.target_value,
                    priority=matcher.get_priority(),
                    context=score.context,
                )
                key = result.pair_key
                current = best.get(key)
                if current is None or is_better(result, current):
                    best[key] = result
        return best, pairs_compared

    def _candidate_pairs(
        self, matcher: BaseMatcher, candidates: List[MatchCandidate]
    ) -> Iterable[Tuple[MatchCandidate, MatchCandidate]]:
        ordered = sorted(candidates, key=lambda c: c.node.key)
        groups: Dict[Hashable, List[MatchCandidate]] = defaultdict(list)
        keyed = True
        for candidate in ordered:
            key = matcher.exact_key(candidate)
            if key is None:
                keyed = False
                break
            groups[key].append(candidate)
        if not keyed:
            groups = {None: ordered}

        for group in groups.values():
            for source, target in combinations(group, 2):
                if source.node.repository_id != target.node.repository_id:
                    yield source, target

    def match_blocks(
        self,
        blocks: Sequence[Block],
        token: Optional[CancellationToken] = None,
    ) -> Tuple[Dict[PairKey, MatchResult], int]:
        """Match a batch of blocks, checking for cancellation between blocks."""
        merged: Dict[PairKey, MatchResult] = {}
        pairs = 0

        def run(block: Block) -> Tuple[Dict[PairKey, MatchResult], int]:
            if token is not None:
                token.raise_if_cancelled()
            return self.match_block(block)

        if self.max_workers == 1 or len(blocks) <= 1:
            results = [run(block) for block in blocks]
        else:
            with ThreadPoolExecutor(
                max_workers=self.max_workers, thread_name_prefix="rollup-match"
            ) as pool:
                futures = [pool.submit(run, block) for block in blocks]
                try:
                    results = [future.result() for future in futures]
                except BaseException:
                    for future in futures:
                        future.cancel()
                    raise

        # Blocks partition the nodes, so pair keys never collide across blocks
        for block_matches, block_pairs in results:
            merged.update(block_matches)
            pairs += block_pairs
        return merged, pairs

    def finalize(
        self, pair_results: Dict[PairKey, MatchResult], blocks: int = 0, pairs: int = 0
    ) -> MatchingResult:
        matches = sorted(pair_results.values(), key=lambda m: m.pair_key)
        by_strategy = {strategy.value: 0 for strategy in STRATEGY_ORDER}
        for m in matches:
            by_strategy[m.strategy.value] += 1
        return MatchingResult(
            matches=matches,
            matches_by_strategy=by_strategy,
            blocks_processed=blocks,
            candidate_pairs=pairs,
        )

    def match(
        self,
        nodes: Iterable[GraphNode],
        token: Optional[CancellationToken] = None,
        on_block: Optional[Callable[[int, int], None]] = None,
    ) -> MatchingResult:
        blocks = self.build_blocks(nodes)
        collected: Dict[PairKey, MatchResult] = {}
        pairs = 0
        batch = max(1, self.max_workers)
        for start in range(0, len(blocks), batch):
            found, compared = self.match_blocks(blocks[start : start + batch], token)
            collected.update(found)
            pairs += compared
            if on_block is not None:
                on_block(min(start + batch, len(blocks)), len(blocks))
        result = self.finalize(collected, len(blocks), pairs)
        logger.info(
            f"Matching found {len(result.matches)} matches across {len(blocks)} blocks "
            f"({pairs} candidate pairs)"
        )
        return result
