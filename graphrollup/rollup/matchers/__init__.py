"""
Matcher strategies for cross-repository node matching.

Each strategy scores a candidate pair of nodes from different repositories:

- ArnMatcher: selected components of AWS ARNs
- ResourceIdMatcher: provider-assigned resource identifiers
- NameMatcher: (namespaced) names, exact or fuzzy
- TagMatcher: required tags / labels
"""

from .arn import ArnMatcher, parse_arn
from .base import (
    BaseMatcher,
    MatchCandidate,
    MatchScore,
    MatcherValidationResult,
)
from .factory import create_matcher, create_matchers
from .name import NameMatcher, levenshtein_distance, name_similarity
from .resource_id import ResourceIdMatcher
from .tag import TagMatcher

__all__ = [
    "ArnMatcher",
    "ResourceIdMatcher",
    "NameMatcher",
    "TagMatcher",
    "BaseMatcher",
    "MatchCandidate",
    "MatchScore",
    "MatcherValidationResult",
    "create_matcher",
    "create_matchers",
    "parse_arn",
    "levenshtein_distance",
    "name_similarity",
]
