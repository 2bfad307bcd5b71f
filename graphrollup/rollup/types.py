"""
Rollup configuration and result types.

Configuration and request models are pydantic models serialized with
camelCase aliases (the wire format shared with the scanning API). Results
produced by the engines are plain dataclasses with explicit ``to_dict`` /
``from_dict`` helpers.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
import uuid

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class MatchingStrategy(str, Enum):
    """Cross-repository matching strategies"""

    ARN = "arn"
    RESOURCE_ID = "resource_id"
    NAME = "name"
    TAG = "tag"


# Final tie-break when confidence and priority are equal; earlier wins
STRATEGY_ORDER = (
    MatchingStrategy.ARN,
    MatchingStrategy.RESOURCE_ID,
    MatchingStrategy.NAME,
    MatchingStrategy.TAG,
)


class RollupStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    ARCHIVED = "archived"


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_EXECUTION_STATUSES = {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED}


class ExecutionPhase(str, Enum):
    LOADING = "loading"
    MATCHING = "matching"
    MERGING = "merging"
    STORING = "storing"


PHASE_ORDER = (
    ExecutionPhase.LOADING,
    ExecutionPhase.MATCHING,
    ExecutionPhase.MERGING,
    ExecutionPhase.STORING,
)


class ConflictResolution(str, Enum):
    FIRST = "first"
    LAST = "last"
    MERGE = "merge"
    ERROR = "error"


class RiskLevel(str, Enum):
    """Risk levels for blast radius analysis"""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=False,
    )

    def to_json_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# ---------------------------------------------------------------------------
# Matcher configuration
# ---------------------------------------------------------------------------


class BaseMatcherConfig(CamelModel):
    enabled: bool = True
    # Range checks live in validation so they surface as configuration errors
    priority: int = Field(default=50, description="0-100, higher wins ties")
    min_confidence: float = Field(
        default=80, description="0-100, matches scoring below are discarded"
    )
    description: Optional[str] = Field(default=None, max_length=500)


class ArnComponents(CamelModel):
    partition: bool = True
    service: bool = True
    region: bool = False
    account: bool = False
    resource: bool = True

    def selected(self) -> List[str]:
        return [
            name
            for name in ("partition", "service", "region", "account", "resource")
            if getattr(self, name)
        ]


class ArnMatcherConfig(BaseMatcherConfig):
    type: Literal["arn"] = "arn"
    pattern: str = Field(..., description="ARN pattern with optional * wildcards")
    allow_partial: bool = False
    components: ArnComponents = Field(default_factory=ArnComponents)


class ResourceIdMatcherConfig(BaseMatcherConfig):
    type: Literal["resource_id"] = "resource_id"
    resource_type: str = Field(..., description="Resource type, * wildcards allowed")
    id_attribute: str = Field(default="id", description="Dotted metadata path")
    normalize: bool = True
    extraction_pattern: Optional[str] = None


class NameMatcherConfig(BaseMatcherConfig):
    type: Literal["name"] = "name"
    pattern: Optional[str] = None
    include_namespace: bool = True
    namespace_pattern: Optional[str] = None
    case_sensitive: bool = False
    fuzzy_threshold: Optional[float] = None


class RequiredTag(CamelModel):
    key: str
    value: Optional[str] = None
    value_pattern: Optional[str] = None


class TagMatcherConfig(BaseMatcherConfig):
    type: Literal["tag"] = "tag"
    required_tags: List[RequiredTag] = Field(default_factory=list)
    match_mode: Literal["all", "any"] = "all"
    ignore_tags: List[str] = Field(default_factory=list)


MatcherConfig = Annotated[
    Union[ArnMatcherConfig, ResourceIdMatcherConfig, NameMatcherConfig, TagMatcherConfig],
    Field(discriminator="type"),
]


# ---------------------------------------------------------------------------
# Rollup configuration
# ---------------------------------------------------------------------------


class MergeOptions(CamelModel):
    conflict_resolution: ConflictResolution = ConflictResolution.MERGE
    preserve_source_info: bool = True
    create_cross_repo_edges: bool = True
    max_nodes: Optional[int] = None
    # Recurse into nested objects under `merge` instead of a shallow merge
    deep_merge: bool = False
    # Escalate `error`-policy conflicts from per-component skips to execution failure
    fail_on_conflict: bool = False


class ScheduleConfig(CamelModel):
    enabled: bool = False
    cron: Optional[str] = None
    timezone: str = "UTC"
    on_scan_complete: bool = False


class RollupConfiguration(CamelModel):
    id: str = Field(default_factory=new_id)
    tenant_id: str
    name: str = Field(..., max_length=255)
    description: Optional[str] = Field(default=None, max_length=2000)
    status: RollupStatus = RollupStatus.DRAFT
    repository_ids: List[str]
    scan_ids: Optional[List[str]] = None
    matchers: List[MatcherConfig]
    include_node_types: Optional[List[str]] = None
    exclude_node_types: Optional[List[str]] = None
    preserve_edge_types: Optional[List[str]] = None
    merge_options: MergeOptions = Field(default_factory=MergeOptions)
    schedule: Optional[ScheduleConfig] = None
    version: int = 1
    created_by: Optional[str] = None
    updated_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    last_executed_at: Optional[datetime] = None

    def enabled_matchers(self) -> List[MatcherConfig]:
        return [m for m in self.matchers if m.enabled]


def rollup_config_to_json(config: RollupConfiguration) -> str:
    return config.model_dump_json(by_alias=True)


def rollup_config_from_json(data: Union[str, bytes]) -> RollupConfiguration:
    return RollupConfiguration.model_validate_json(data)


class RollupCreateRequest(CamelModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=2000)
    repository_ids: List[str]
    scan_ids: Optional[List[str]] = None
    matchers: List[MatcherConfig]
    include_node_types: Optional[List[str]] = None
    exclude_node_types: Optional[List[str]] = None
    preserve_edge_types: Optional[List[str]] = None
    merge_options: Optional[MergeOptions] = None
    schedule: Optional[ScheduleConfig] = None
    activate: bool = Field(
        default=False, description="Create directly in 'active' instead of 'draft'"
    )


class RollupUpdateRequest(CamelModel):
    version: int = Field(..., description="Current version (optimistic lock)")
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=2000)
    status: Optional[RollupStatus] = None
    repository_ids: Optional[List[str]] = None
    scan_ids: Optional[List[str]] = None
    matchers: Optional[List[MatcherConfig]] = None
    include_node_types: Optional[List[str]] = None
    exclude_node_types: Optional[List[str]] = None
    preserve_edge_types: Optional[List[str]] = None
    merge_options: Optional[MergeOptions] = None
    schedule: Optional[ScheduleConfig] = None


class RollupListQuery(CamelModel):
    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=20, ge=1, le=100)
    status: Optional[RollupStatus] = None
    repository_id: Optional[str] = None
    search: Optional[str] = None
    sort_by: Literal["name", "createdAt", "updatedAt", "lastExecutedAt"] = "createdAt"
    sort_order: Literal["asc", "desc"] = "desc"


class ExecuteOptions(CamelModel):
    scan_ids: Optional[List[str]] = None
    force: bool = False
    run_async: bool = Field(default=True, alias="async")
    timeout_seconds: Optional[int] = Field(default=None, ge=1, le=3600)
    include_match_details: bool = False


class BlastRadiusQuery(CamelModel):
    node_ids: List[str] = Field(..., min_length=1)
    # 0 is accepted and yields an empty result
    max_depth: int = Field(default=5, ge=0, le=20)
    edge_types: Optional[List[str]] = None
    include_cross_repo: bool = True
    include_indirect: bool = True


# ---------------------------------------------------------------------------
# Engine results
# ---------------------------------------------------------------------------


@dataclass
class MatchResult:
    """A winning match between two nodes from different repositories"""

    source_node_id: str
    source_repo_id: str
    target_node_id: str
    target_repo_id: str
    strategy: MatchingStrategy
    confidence: float
    matched_attribute: str
    source_value: str
    target_value: str
    priority: int = 50
    context: Dict[str, Any] = field(default_factory=dict)

    @property
    def pair_key(self) -> tuple:
        a = (self.source_repo_id, self.source_node_id)
        b = (self.target_repo_id, self.target_node_id)
        return (a, b) if a <= b else (b, a)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sourceNodeId": self.source_node_id,
            "sourceRepoId": self.source_repo_id,
            "targetNodeId": self.target_node_id,
            "targetRepoId": self.target_repo_id,
            "strategy": self.strategy.value,
            "confidence": self.confidence,
            "details": {
                "matchedAttribute": self.matched_attribute,
                "sourceValue": self.source_value,
                "targetValue": self.target_value,
                "context": self.context,
            },
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MatchResult":
        details = data.get("details", {})
        return cls(
            source_node_id=data["sourceNodeId"],
            source_repo_id=data["sourceRepoId"],
            target_node_id=data["targetNodeId"],
            target_repo_id=data["targetRepoId"],
            strategy=MatchingStrategy(data["strategy"]),
            confidence=data["confidence"],
            matched_attribute=details.get("matchedAttribute", ""),
            source_value=details.get("sourceValue", ""),
            target_value=details.get("targetValue", ""),
            context=details.get("context") or {},
        )


@dataclass
class MergedNodeLocation:
    repo_id: str
    node_id: str
    file: str
    line_start: int
    line_end: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "repoId": self.repo_id,
            "nodeId": self.node_id,
            "file": self.file,
            "lineStart": self.line_start,
            "lineEnd": self.line_end,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MergedNodeLocation":
        return cls(
            repo_id=data["repoId"],
            node_id=data.get("nodeId", ""),
            file=data.get("file", ""),
            line_start=data.get("lineStart", 0),
            line_end=data.get("lineEnd", 0),
        )


@dataclass
class MatchInfo:
    strategy: MatchingStrategy
    confidence: float
    match_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "strategy": self.strategy.value,
            "confidence": self.confidence,
            "matchCount": self.match_count,
        }


@dataclass
class MergedNode:
    """One aggregate node built from a connected component of matched nodes"""

    id: str
    source_node_ids: List[str]
    source_repo_ids: List[str]
    type: str
    name: str
    locations: List[MergedNodeLocation] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    match_info: Optional[MatchInfo] = None

    @property
    def is_merged(self) -> bool:
        return len(self.source_node_ids) > 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "sourceNodeIds": self.source_node_ids,
            "sourceRepoIds": self.source_repo_ids,
            "type": self.type,
            "name": self.name,
            "locations": [loc.to_dict() for loc in self.locations],
            "metadata": self.metadata,
            "matchInfo": self.match_info.to_dict() if self.match_info else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MergedNode":
        info = data.get("matchInfo")
        return cls(
            id=data["id"],
            source_node_ids=list(data["sourceNodeIds"]),
            source_repo_ids=list(data["sourceRepoIds"]),
            type=data["type"],
            name=data["name"],
            locations=[MergedNodeLocation.from_dict(x) for x in data.get("locations", [])],
            metadata=dict(data.get("metadata") or {}),
            match_info=(
                MatchInfo(
                    strategy=MatchingStrategy(info["strategy"]),
                    confidence=info["confidence"],
                    match_count=info["matchCount"],
                )
                if info
                else None
            ),
        )


@dataclass
class RollupExecutionStats:
    total_nodes_processed: int = 0
    nodes_matched: int = 0
    nodes_unmatched: int = 0
    total_edges_processed: int = 0
    cross_repo_edges_created: int = 0
    matches_by_strategy: Dict[str, int] = field(
        default_factory=lambda: {s.value: 0 for s in STRATEGY_ORDER}
    )
    nodes_by_type: Dict[str, int] = field(default_factory=dict)
    edges_by_type: Dict[str, int] = field(default_factory=dict)
    merged_node_count: int = 0
    merge_conflicts: int = 0
    execution_time_ms: int = 0
    phase_timings_ms: Dict[str, int] = field(default_factory=dict)
    memory_peak_bytes: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "totalNodesProcessed": self.total_nodes_processed,
            "nodesMatched": self.nodes_matched,
            "nodesUnmatched": self.nodes_unmatched,
            "totalEdgesProcessed": self.total_edges_processed,
            "crossRepoEdgesCreated": self.cross_repo_edges_created,
            "matchesByStrategy": dict(self.matches_by_strategy),
            "nodesByType": dict(self.nodes_by_type),
            "edgesByType": dict(self.edges_by_type),
            "mergedNodeCount": self.merged_node_count,
            "mergeConflicts": self.merge_conflicts,
            "executionTimeMs": self.execution_time_ms,
            "phaseTimingsMs": dict(self.phase_timings_ms),
        }
        if self.memory_peak_bytes is not None:
            data["memoryPeakBytes"] = self.memory_peak_bytes
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RollupExecutionStats":
        return cls(
            total_nodes_processed=data.get("totalNodesProcessed", 0),
            nodes_matched=data.get("nodesMatched", 0),
            nodes_unmatched=data.get("nodesUnmatched", 0),
            total_edges_processed=data.get("totalEdgesProcessed", 0),
            cross_repo_edges_created=data.get("crossRepoEdgesCreated", 0),
            matches_by_strategy=dict(data.get("matchesByStrategy") or {}),
            nodes_by_type=dict(data.get("nodesByType") or {}),
            edges_by_type=dict(data.get("edgesByType") or {}),
            merged_node_count=data.get("mergedNodeCount", 0),
            merge_conflicts=data.get("mergeConflicts", 0),
            execution_time_ms=data.get("executionTimeMs", 0),
            phase_timings_ms=dict(data.get("phaseTimingsMs") or {}),
            memory_peak_bytes=data.get("memoryPeakBytes"),
        )


@dataclass
class RollupExecution:
    id: str
    rollup_id: str
    tenant_id: str
    status: ExecutionStatus = ExecutionStatus.PENDING
    phase: Optional[ExecutionPhase] = None
    scan_ids: List[str] = field(default_factory=list)
    stats: Optional[RollupExecutionStats] = None
    matches: Optional[List[MatchResult]] = None
    merged_nodes: Optional[List[MergedNode]] = None
    progress: int = 0
    attempt: int = 1
    retry_of: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    error_details: Optional[Dict[str, Any]] = None
    triggered_by: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_EXECUTION_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "rollupId": self.rollup_id,
            "tenantId": self.tenant_id,
            "status": self.status.value,
            "phase": self.phase.value if self.phase else None,
            "scanIds": list(self.scan_ids),
            "stats": self.stats.to_dict() if self.stats else None,
            "matches": (
                [m.to_dict() for m in self.matches] if self.matches is not None else None
            ),
            "mergedNodes": (
                [n.to_dict() for n in self.merged_nodes]
                if self.merged_nodes is not None
                else None
            ),
            "progress": self.progress,
            "attempt": self.attempt,
            "retryOf": self.retry_of,
            "errorCode": self.error_code,
            "errorMessage": self.error_message,
            "errorDetails": self.error_details,
            "triggeredBy": self.triggered_by,
            "createdAt": self.created_at.isoformat(),
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
        }
