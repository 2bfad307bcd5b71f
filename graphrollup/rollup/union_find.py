"""Disjoint-set forest used to group matched nodes into connected components."""

from __future__ import annotations

from typing import Dict, Generic, Hashable, Iterable, List, TypeVar

K = TypeVar("K", bound=Hashable)


class UnionFind(Generic[K]):
    """Union by rank with path compression (near-constant amortized operations)."""

    def __init__(self, items: Iterable[K] = ()) -> None:
        self._parent: Dict[K, K] = {}
        self._rank: Dict[K, int] = {}
        for item in items:
            self.add(item)

    def __contains__(self, item: object) -> bool:
        return item in self._parent

    def __len__(self) -> int:
        return len(self._parent)

    def add(self, item: K) -> None:
        if item not in self._parent:
            self._parent[item] = item
            self._rank[item] = 0

    def find(self, item: K) -> K:
        self.add(item)
        root = item
        while self._parent[root] != root:
            root = self._parent[root]
        # Path compression
        while self._parent[item] != root:
            self._parent[item], item = root, self._parent[item]
        return root

    def union(self, a: K, b: K) -> K:
        root_a = self.find(a)
        root_b = self.find(b)
        if root_a == root_b:
            return root_a
        if self._rank[root_a] < self._rank[root_b]:
            root_a, root_b = root_b, root_a
        self._parent[root_b] = root_a
        if self._rank[root_a] == self._rank[root_b]:
            self._rank[root_a] += 1
        return root_a

    def connected(self, a: K, b: K) -> bool:
        return self.find(a) == self.find(b)

    def components(self, min_size: int = 1) -> List[List[K]]:
        """Groups of items, each sorted, ordered by their smallest member."""
        groups: Dict[K, List[K]] = {}
        for item in self._parent:
            groups.setdefault(self.find(item), []).append(item)
        result = [sorted(group) for group in groups.values() if len(group) >= min_size]
        result.sort(key=lambda group: group[0])
        return result
