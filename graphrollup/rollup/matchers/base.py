"""
Matcher base class.

A matcher scores a candidate pair of nodes from different repositories.
Scoring is split in two steps so the coordinator can extract each node's
comparable value once and reuse it across every pair in the node's block:

- ``extract`` turns a node into a ``MatchCandidate`` (or None when the node
  carries nothing this matcher can compare)
- ``compare`` scores two candidates

Matchers whose scores are all-or-nothing also expose ``exact_key`` so
candidates can be grouped by key instead of compared pairwise.
"""

from __future__ import annotations

import abc
import re
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Dict, Generic, Hashable, List, Optional, TypeVar

from ..graph import GraphNode
from ..types import BaseMatcherConfig, MatchingStrategy

C = TypeVar("C", bound=BaseMatcherConfig)

LOW_CONFIDENCE_WARNING_THRESHOLD = 50


@dataclass
class MatchCandidate:
    node: GraphNode
    value: str
    context: Dict[str, Any] = field(default_factory=dict)


@dataclass
class MatchScore:
    confidence: float
    matched_attribute: str
    source_value: str
    target_value: str
    context: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ConfigIssue:
    code: str
    message: str
    field: str = ""


@dataclass
class MatcherValidationResult:
    errors: List[ConfigIssue] = field(default_factory=list)
    warnings: List[ConfigIssue] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def error(self, code: str, message: str, field: str = "") -> None:
        self.errors.append(ConfigIssue(code, message, field))

    def warn(self, code: str, message: str, field: str = "") -> None:
        self.warnings.append(ConfigIssue(code, message, field))


@lru_cache(maxsize=512)
def wildcard_regex(pattern: str, case_sensitive: bool = True) -> re.Pattern:
    """Compile a `*` wildcard pattern into an anchored regex."""
    body = ".*".join(re.escape(part) for part in pattern.split("*"))
    flags = 0 if case_sensitive else re.IGNORECASE
    return re.compile(f"^{body}$", flags)


def wildcard_match(pattern: Optional[str], value: str, case_sensitive: bool = True) -> bool:
    if not pattern or pattern == "*":
        return True
    return wildcard_regex(pattern, case_sensitive).match(value) is not None


def compile_regex(pattern: str) -> Optional[re.Pattern]:
    try:
        return re.compile(pattern)
    except re.error:
        return None


def resolve_path(data: Dict[str, Any], path: str) -> Any:
    """Resolve a dotted path (``config.bucket.id``) against nested dicts."""
    current: Any = data
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return None
        current = current[part]
    return current


class BaseMatcher(abc.ABC, Generic[C]):
    strategy: MatchingStrategy

    def __init__(self, config: C) -> None:
        self.config = config

    def is_enabled(self) -> bool:
        return self.config.enabled

    def get_priority(self) -> int:
        return self.config.priority

    @property
    def min_confidence(self) -> float:
        return self.config.min_confidence

    @abc.abstractmethod
    def extract(self, node: GraphNode) -> Optional[MatchCandidate]:
        ...

    @abc.abstractmethod
    def compare(
        self, source: MatchCandidate, target: MatchCandidate
    ) -> Optional[MatchScore]:
        ...

    def exact_key(self, candidate: MatchCandidate) -> Optional[Hashable]:
        """Grouping key when only identical keys can match; None forces pairwise."""
        return None

    def score(self, node_a: GraphNode, node_b: GraphNode) -> Optional[MatchScore]:
        """Score a pair of nodes; nodes from the same repository never match."""
        if node_a.repository_id == node_b.repository_id:
            return None
        a = self.extract(node_a)
        if a is None:
            return None
        b = self.extract(node_b)
        if b is None:
            return None
        return self.compare(a, b)

    def validate_config(self) -> MatcherValidationResult:
        result = MatcherValidationResult()
        if not 0 <= self.config.priority <= 100:
            result.error(
                "INVALID_PRIORITY",
                f"priority must be between 0 and 100, got {self.config.priority}",
                "priority",
            )
        if not 0 <= self.config.min_confidence <= 100:
            result.error(
                "INVALID_MIN_CONFIDENCE",
                f"minConfidence must be between 0 and 100, got {self.config.min_confidence}",
                "minConfidence",
            )
        elif self.config.min_confidence < LOW_CONFIDENCE_WARNING_THRESHOLD:
            result.warn(
                "LOW_MIN_CONFIDENCE",
                f"minConfidence {self.config.min_confidence} may produce false matches",
                "minConfidence",
            )
        self._validate(result)
        return result

    def _validate(self, result: MatcherValidationResult) -> None:
        """Strategy-specific checks."""
        return None
