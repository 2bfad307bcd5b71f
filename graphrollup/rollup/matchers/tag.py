"""Tag matcher: compares required tags (or Kubernetes labels) across nodes."""

from __future__ import annotations

import re
from typing import Any, Dict, List, Optional, Tuple

from ..graph import GraphNode
from ..types import MatchingStrategy, RequiredTag, TagMatcherConfig
from .base import (
    BaseMatcher,
    MatchCandidate,
    MatchScore,
    MatcherValidationResult,
    compile_regex,
)

MANY_TAGS_ANY_MODE = 5


def node_tags(node: GraphNode) -> Dict[str, Any]:
    tags = node.metadata.get("tags")
    if not isinstance(tags, dict) or not tags:
        tags = node.metadata.get("labels")
    return tags if isinstance(tags, dict) else {}


class TagMatcher(BaseMatcher[TagMatcherConfig]):
    """
    A required tag matches for a pair when both nodes carry the key (keys
    compare case-insensitively), both values satisfy ``value`` /
    ``valuePattern`` when given, and the two values are equal.
    """

    strategy = MatchingStrategy.TAG

    def __init__(self, config: TagMatcherConfig) -> None:
        super().__init__(config)
        self._ignored = {key.lower() for key in config.ignore_tags}
        self._required: List[Tuple[RequiredTag, Optional[re.Pattern]]] = [
            (tag, compile_regex(tag.value_pattern) if tag.value_pattern else None)
            for tag in config.required_tags
            if tag.key.lower() not in self._ignored
        ]

    def _satisfies(
        self, tag: RequiredTag, pattern: Optional[re.Pattern], value: Any
    ) -> bool:
        if value is None:
            return False
        text = str(value)
        if tag.value is not None and text != tag.value:
            return False
        if tag.value_pattern is not None:
            if pattern is None or pattern.search(text) is None:
                return False
        return True

    def extract(self, node: GraphNode) -> Optional[MatchCandidate]:
        raw = node_tags(node)
        if not raw or not self._required:
            return None
        tags = {
            str(key).lower(): value
            for key, value in raw.items()
            if str(key).lower() not in self._ignored
        }
        satisfied: Dict[str, str] = {}
        for tag, pattern in self._required:
            value = tags.get(tag.key.lower())
            if self._satisfies(tag, pattern, value):
                satisfied[tag.key.lower()] = str(value)

        if self.config.match_mode == "all" and len(satisfied) < len(self._required):
            return None
        if not satisfied:
            return None

        match_key = ",".join(f"{key}={satisfied[key]}" for key in sorted(satisfied))
        return MatchCandidate(
            node=node, value=match_key, context={"tags": satisfied}
        )

    def compare(
        self, source: MatchCandidate, target: MatchCandidate
    ) -> Optional[MatchScore]:
        a: Dict[str, str] = source.context["tags"]
        b: Dict[str, str] = target.context["tags"]
        matched = [
            tag.key.lower()
            for tag, _ in self._required
            if tag.key.lower() in a and a[tag.key.lower()] == b.get(tag.key.lower())
        ]
        total = len(self._required)
        if not matched:
            return None
        if self.config.match_mode == "all" and len(matched) < total:
            return None

        return MatchScore(
            confidence=len(matched) * 100 // total,
            matched_attribute="tags",
            source_value=source.value,
            target_value=target.value,
            context={
                "matchMode": self.config.match_mode,
                "requiredTagKeys": [tag.key for tag, _ in self._required],
                "matchedTagKeys": matched,
                "sourceTags": dict(a),
                "targetTags": dict(b),
            },
        )

    def _validate(self, result: MatcherValidationResult) -> None:
        if not self.config.required_tags:
            result.error(
                "NO_REQUIRED_TAGS", "At least one required tag is needed", "requiredTags"
            )
            return
        seen = set()
        for index, tag in enumerate(self.config.required_tags):
            field_path = f"requiredTags.{index}"
            if not tag.key.strip():
                result.error("EMPTY_TAG_KEY", "Tag key must not be empty", f"{field_path}.key")
            if tag.value_pattern is not None and compile_regex(tag.value_pattern) is None:
                result.error(
                    "INVALID_TAG_VALUE_PATTERN",
                    f"valuePattern is not a valid regular expression: {tag.value_pattern}",
                    f"{field_path}.valuePattern",
                )
            if tag.value is not None and tag.value_pattern is not None:
                result.warn(
                    "REDUNDANT_TAG_VALUE",
                    f"Tag '{tag.key}' sets both value and valuePattern",
                    field_path,
                )
            if tag.key.lower() in seen:
                result.warn(
                    "DUPLICATE_TAG_KEYS", f"Tag '{tag.key}' is listed twice", field_path
                )
            seen.add(tag.key.lower())
        if (
            self.config.match_mode == "any"
            and len(self.config.required_tags) > MANY_TAGS_ANY_MODE
        ):
            result.warn(
                "MANY_TAGS_ANY_MODE",
                "Many required tags with matchMode 'any' may produce weak matches",
                "requiredTags",
            )
