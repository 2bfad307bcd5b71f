"""ARN matcher: compares selected components of AWS ARNs."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Hashable, List, Optional

from ..graph import GraphNode
from ..types import ArnMatcherConfig, MatchingStrategy
from .base import (
    BaseMatcher,
    MatchCandidate,
    MatchScore,
    MatcherValidationResult,
    wildcard_match,
)

VALID_PARTITIONS = {"aws", "aws-cn", "aws-us-gov"}


@dataclass(frozen=True)
class ParsedArn:
    partition: str
    service: str
    region: str
    account: str
    resource: str

    def component(self, name: str) -> str:
        return getattr(self, name)


def parse_arn(value: str) -> Optional[ParsedArn]:
    """Split ``arn:partition:service:region:account:resource``.

    The resource part may itself contain colons (``function:name:alias``).
    """
    parts = value.split(":", 5)
    if len(parts) < 6 or parts[0] != "arn":
        return None
    return ParsedArn(
        partition=parts[1],
        service=parts[2],
        region=parts[3],
        account=parts[4],
        resource=parts[5],
    )


def find_arn(metadata: Dict[str, Any]) -> Optional[str]:
    arn = metadata.get("arn")
    if isinstance(arn, str) and arn:
        return arn
    # Providers often nest computed attributes one level down
    for value in metadata.values():
        if isinstance(value, dict):
            nested = value.get("arn")
            if isinstance(nested, str) and nested:
                return nested
    return None


class ArnMatcher(BaseMatcher[ArnMatcherConfig]):
    strategy = MatchingStrategy.ARN

    def __init__(self, config: ArnMatcherConfig) -> None:
        super().__init__(config)
        self._components: List[str] = config.components.selected()

    def extract(self, node: GraphNode) -> Optional[MatchCandidate]:
        arn = find_arn(node.metadata)
        if arn is None or not wildcard_match(self.config.pattern, arn):
            return None
        parsed = parse_arn(arn)
        if parsed is None:
            return None
        return MatchCandidate(node=node, value=arn, context={"parsed": parsed})

    def exact_key(self, candidate: MatchCandidate) -> Optional[Hashable]:
        if self.config.allow_partial:
            return None
        parsed: ParsedArn = candidate.context["parsed"]
        return tuple(parsed.component(c) for c in self._components)

    def compare(
        self, source: MatchCandidate, target: MatchCandidate
    ) -> Optional[MatchScore]:
        if not self._components:
            return None
        a: ParsedArn = source.context["parsed"]
        b: ParsedArn = target.context["parsed"]
        matching = [c for c in self._components if a.component(c) == b.component(c)]

        if not self.config.allow_partial:
            if len(matching) != len(self._components):
                return None
            confidence = 100
        else:
            if not matching:
                return None
            confidence = len(matching) * 100 // len(self._components)

        return MatchScore(
            confidence=confidence,
            matched_attribute="arn",
            source_value=source.value,
            target_value=target.value,
            context={
                "comparedComponents": list(self._components),
                "matchingComponents": matching,
                "allowPartial": self.config.allow_partial,
            },
        )

    def _validate(self, result: MatcherValidationResult) -> None:
        pattern = (self.config.pattern or "").strip()
        if not pattern:
            result.error("ARN_PATTERN_REQUIRED", "ARN pattern is required", "pattern")
            return
        parts = pattern.split(":", 5)
        if parts[0] != "arn" or len(parts) < 6:
            result.error(
                "INVALID_ARN_PATTERN",
                f"ARN pattern must look like arn:partition:service:region:account:resource, got '{pattern}'",
                "pattern",
            )
            return
        if parts[1] != "*" and parts[1] not in VALID_PARTITIONS:
            result.error(
                "INVALID_ARN_PATTERN",
                f"Unknown ARN partition '{parts[1]}'",
                "pattern",
            )
        if all(p in ("", "*") for p in parts[1:]):
            result.warn(
                "BROAD_ARN_PATTERN",
                "ARN pattern matches every ARN; consider narrowing it",
                "pattern",
            )
        if not self._components:
            result.error(
                "NO_ARN_COMPONENTS",
                "At least one ARN component must be selected for comparison",
                "components",
            )
