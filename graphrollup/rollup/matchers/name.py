"""Name matcher: exact or fuzzy comparison of (namespaced) node names."""

from __future__ import annotations

from typing import Hashable, Optional

from ..graph import GraphNode
from ..types import MatchingStrategy, NameMatcherConfig
from .base import (
    BaseMatcher,
    MatchCandidate,
    MatchScore,
    MatcherValidationResult,
    wildcard_match,
)

LOW_FUZZY_THRESHOLD = 70


def levenshtein_distance(s1: str, s2: str) -> int:
    """Edit distance using two rolling rows."""
    if len(s1) < len(s2):
        return levenshtein_distance(s2, s1)
    if not s2:
        return len(s1)

    previous = list(range(len(s2) + 1))
    for i, c1 in enumerate(s1):
        current = [i + 1]
        for j, c2 in enumerate(s2):
            insertions = previous[j + 1] + 1
            deletions = current[j] + 1
            substitutions = previous[j] + (c1 != c2)
            current.append(min(insertions, deletions, substitutions))
        previous = current
    return previous[-1]


def name_similarity(a: str, b: str) -> int:
    """Normalized edit-distance similarity in 0..100, floored."""
    if a == b:
        return 100
    longest = max(len(a), len(b))
    if longest == 0:
        return 100
    distance = levenshtein_distance(a, b)
    return (longest - distance) * 100 // longest


class NameMatcher(BaseMatcher[NameMatcherConfig]):
    strategy = MatchingStrategy.NAME

    def match_key(self, node: GraphNode) -> Optional[str]:
        name = (node.name or "").strip()
        if not name:
            return None
        if not wildcard_match(self.config.pattern, name, self.config.case_sensitive):
            return None
        namespace = node.metadata.get("namespace")
        if not isinstance(namespace, str) or not namespace:
            namespace = None
        if self.config.namespace_pattern:
            if namespace is None or not wildcard_match(
                self.config.namespace_pattern, namespace, self.config.case_sensitive
            ):
                return None
        key = f"{namespace}/{name}" if self.config.include_namespace and namespace else name
        return key if self.config.case_sensitive else key.lower()

    def extract(self, node: GraphNode) -> Optional[MatchCandidate]:
        key = self.match_key(node)
        if key is None:
            return None
        return MatchCandidate(node=node, value=key)

    def exact_key(self, candidate: MatchCandidate) -> Optional[Hashable]:
        if self.config.fuzzy_threshold is not None:
            return None
        return candidate.value

    def compare(
        self, source: MatchCandidate, target: MatchCandidate
    ) -> Optional[MatchScore]:
        context = {
            "caseSensitive": self.config.case_sensitive,
            "includeNamespace": self.config.include_namespace,
        }
        if self.config.fuzzy_threshold is None:
            if source.value != target.value:
                return None
            confidence = 100
        else:
            confidence = name_similarity(source.value, target.value)
            if confidence < self.config.fuzzy_threshold:
                return None
            context["fuzzyThreshold"] = self.config.fuzzy_threshold
            context["similarity"] = confidence

        return MatchScore(
            confidence=confidence,
            matched_attribute="name",
            source_value=source.value,
            target_value=target.value,
            context=context,
        )

    def _validate(self, result: MatcherValidationResult) -> None:
        threshold = self.config.fuzzy_threshold
        if threshold is not None:
            if not 0 <= threshold <= 100:
                result.error(
                    "INVALID_FUZZY_THRESHOLD",
                    f"fuzzyThreshold must be between 0 and 100, got {threshold}",
                    "fuzzyThreshold",
                )
            elif threshold < LOW_FUZZY_THRESHOLD:
                result.warn(
                    "LOW_FUZZY_THRESHOLD",
                    f"fuzzyThreshold {threshold} may match unrelated names",
                    "fuzzyThreshold",
                )
        for field_name, code, pattern in (
            ("pattern", "INVALID_NAME_PATTERN", self.config.pattern),
            ("namespacePattern", "INVALID_NAMESPACE_PATTERN", self.config.namespace_pattern),
        ):
            if pattern is not None and not pattern.strip():
                result.error(code, f"{field_name} must not be blank", field_name)
