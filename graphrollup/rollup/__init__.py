"""
Cross-repository rollup.

Matches equivalent nodes across per-repository dependency graphs, merges
them into aggregate nodes and answers blast-radius queries against the
merged result.
"""

from .blast_radius import BlastRadiusEngine, BlastRadiusResult, classify_risk
from .errors import RollupError, RollupErrorCode
from .events import RollupEventPublisher, RollupEventType
from .executor import RollupExecutor
from .graph import GraphSource, HttpGraphSource, InMemoryGraphSource, RepositoryGraph
from .matching import MatchingCoordinator
from .merge_engine import MergeEngine
from .repository import RollupRepository
from .retry import RetryPolicy
from .service import RollupService

__all__ = [
    "BlastRadiusEngine",
    "BlastRadiusResult",
    "classify_risk",
    "RollupError",
    "RollupErrorCode",
    "RollupEventPublisher",
    "RollupEventType",
    "RollupExecutor",
    "GraphSource",
    "HttpGraphSource",
    "InMemoryGraphSource",
    "RepositoryGraph",
    "MatchingCoordinator",
    "MergeEngine",
    "RollupRepository",
    "RetryPolicy",
    "RollupService",
]
