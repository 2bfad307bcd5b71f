"""Builds matcher instances from their configuration variants."""

from __future__ import annotations

from typing import List, Sequence, assert_never

from ..types import (
    ArnMatcherConfig,
    MatcherConfig,
    NameMatcherConfig,
    ResourceIdMatcherConfig,
    TagMatcherConfig,
)
from .arn import ArnMatcher
from .base import BaseMatcher
from .name import NameMatcher
from .resource_id import ResourceIdMatcher
from .tag import TagMatcher


def create_matcher(config: MatcherConfig) -> BaseMatcher:
    # Exhaustive over the MatcherConfig union: a new variant fails type checking here
    if isinstance(config, ArnMatcherConfig):
        return ArnMatcher(config)
    elif isinstance(config, ResourceIdMatcherConfig):
        return ResourceIdMatcher(config)
    elif isinstance(config, NameMatcherConfig):
        return NameMatcher(config)
    elif isinstance(config, TagMatcherConfig):
        return TagMatcher(config)
    else:
        assert_never(config)


def create_matchers(
    configs: Sequence[MatcherConfig], enabled_only: bool = True
) -> List[BaseMatcher]:
    matchers = [create_matcher(config) for config in configs]
    if enabled_only:
        matchers = [m for m in matchers if m.is_enabled()]
    return matchers
