"""Resource id matcher: exact comparison of a provider-assigned identifier."""

from __future__ import annotations

import re
from typing import Hashable, Optional

from ..graph import GraphNode
from ..types import MatchingStrategy, ResourceIdMatcherConfig
from .base import (
    BaseMatcher,
    MatchCandidate,
    MatchScore,
    MatcherValidationResult,
    compile_regex,
    resolve_path,
    wildcard_match,
)

MAX_ID_LENGTH = 256
PLACEHOLDER_IDS = {"", "unknown", "<computed>", "(known after apply)", "null", "none"}
_ID_ATTRIBUTE = re.compile(r"^[A-Za-z_][A-Za-z0-9_-]*(\.[A-Za-z_][A-Za-z0-9_-]*)*$")


def node_resource_type(node: GraphNode) -> Optional[str]:
    value = node.metadata.get("resourceType", node.metadata.get("resource_type"))
    return value if isinstance(value, str) and value else None


class ResourceIdMatcher(BaseMatcher[ResourceIdMatcherConfig]):
    strategy = MatchingStrategy.RESOURCE_ID

    def __init__(self, config: ResourceIdMatcherConfig) -> None:
        super().__init__(config)
        self._extraction = (
            compile_regex(config.extraction_pattern) if config.extraction_pattern else None
        )

    def _extract_id(self, node: GraphNode) -> Optional[str]:
        raw = resolve_path(node.metadata, self.config.id_attribute)
        if raw is None or isinstance(raw, (dict, list, bool)):
            return None
        value = str(raw)
        if self._extraction is not None:
            match = self._extraction.search(value)
            if match is None:
                return None
            value = match.group(1) if match.groups() else match.group(0)
        if self.config.normalize:
            value = value.strip().lower()
        if value.strip().lower() in PLACEHOLDER_IDS or value.startswith("${"):
            return None
        if len(value) > MAX_ID_LENGTH:
            return None
        return value

    def extract(self, node: GraphNode) -> Optional[MatchCandidate]:
        resource_type = node_resource_type(node)
        if resource_type is None or not wildcard_match(
            self.config.resource_type, resource_type
        ):
            return None
        value = self._extract_id(node)
        if value is None:
            return None
        return MatchCandidate(
            node=node, value=value, context={"resourceType": resource_type}
        )

    def exact_key(self, candidate: MatchCandidate) -> Optional[Hashable]:
        return (candidate.context["resourceType"], candidate.value)

    def compare(
        self, source: MatchCandidate, target: MatchCandidate
    ) -> Optional[MatchScore]:
        if source.context["resourceType"] != target.context["resourceType"]:
            return None
        if source.value != target.value:
            return None
        return MatchScore(
            confidence=100,
            matched_attribute=self.config.id_attribute,
            source_value=source.value,
            target_value=target.value,
            context={
                "resourceType": source.context["resourceType"],
                "normalized": self.config.normalize,
            },
        )

    def _validate(self, result: MatcherValidationResult) -> None:
        if not (self.config.resource_type or "").strip():
            result.error(
                "RESOURCE_TYPE_REQUIRED", "resourceType is required", "resourceType"
            )
        if not _ID_ATTRIBUTE.match(self.config.id_attribute or ""):
            result.error(
                "INVALID_ID_ATTRIBUTE",
                f"idAttribute must be a dotted attribute path, got '{self.config.id_attribute}'",
                "idAttribute",
            )
        if self.config.extraction_pattern and self._extraction is None:
            result.error(
                "INVALID_EXTRACTION_PATTERN",
                f"extractionPattern is not a valid regular expression: {self.config.extraction_pattern}",
                "extractionPattern",
            )
