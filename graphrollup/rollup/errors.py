"""
Rollup error taxonomy.

Every error surfaced to callers carries a stable ``code`` so client code can
branch without string matching, an HTTP status for the API layer, and an
``is_retryable`` flag consumed by the executor's retry flow.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional


class RollupErrorCode:
    INVALID_CONFIGURATION = "ROLLUP_INVALID_CONFIGURATION"
    INVALID_MATCHER = "ROLLUP_INVALID_MATCHER"
    REPOSITORY_NOT_FOUND = "ROLLUP_REPOSITORY_NOT_FOUND"
    SCAN_NOT_FOUND = "ROLLUP_SCAN_NOT_FOUND"
    EXECUTION_FAILED = "ROLLUP_EXECUTION_FAILED"
    EXECUTION_TIMEOUT = "ROLLUP_EXECUTION_TIMEOUT"
    EXECUTION_IN_PROGRESS = "ROLLUP_EXECUTION_IN_PROGRESS"
    EXECUTION_CANCELLED = "ROLLUP_EXECUTION_CANCELLED"
    EXECUTION_NOT_RUNNING = "ROLLUP_EXECUTION_NOT_RUNNING"
    NOT_FOUND = "ROLLUP_NOT_FOUND"
    EXECUTION_NOT_FOUND = "ROLLUP_EXECUTION_NOT_FOUND"
    VERSION_CONFLICT = "ROLLUP_VERSION_CONFLICT"
    MAX_NODES_EXCEEDED = "ROLLUP_MAX_NODES_EXCEEDED"
    MAX_REPOSITORIES_EXCEEDED = "ROLLUP_MAX_REPOSITORIES_EXCEEDED"
    MERGE_FAILED = "ROLLUP_MERGE_FAILED"
    MERGE_CONFLICT = "ROLLUP_MERGE_CONFLICT"
    BLAST_RADIUS_FAILED = "ROLLUP_BLAST_RADIUS_FAILED"
    GRAPH_SOURCE_UNAVAILABLE = "ROLLUP_GRAPH_SOURCE_UNAVAILABLE"
    STORAGE_FAILED = "ROLLUP_STORAGE_FAILED"


@dataclass
class ValidationIssue:
    """A single configuration problem, addressed by dotted field path."""

    field: str
    code: str
    message: str

    def to_dict(self) -> Dict[str, str]:
        return {"field": self.field, "code": self.code, "message": self.message}


class RollupError(Exception):
    code: str = RollupErrorCode.EXECUTION_FAILED
    http_status: int = 500
    is_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        retryable: Optional[bool] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if retryable is not None:
            self.is_retryable = retryable
        self.details: Dict[str, Any] = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
            "retryable": self.is_retryable,
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, message={self.message!r})"


class RollupConfigurationError(RollupError):
    code = RollupErrorCode.INVALID_CONFIGURATION
    http_status = 400

    def __init__(
        self,
        message: str,
        issues: Optional[List[ValidationIssue]] = None,
        *,
        code: Optional[str] = None,
    ) -> None:
        self.issues = list(issues or [])
        super().__init__(
            message,
            code=code,
            details={"errors": [issue.to_dict() for issue in self.issues]},
        )

    @classmethod
    def from_issues(cls, issues: Iterable[ValidationIssue]) -> "RollupConfigurationError":
        issues = list(issues)
        if len(issues) == 1:
            message = f"Invalid rollup configuration: {issues[0].message}"
        else:
            message = f"Invalid rollup configuration: {len(issues)} errors"
        code = None
        if issues and all(i.code == RollupErrorCode.INVALID_MATCHER for i in issues):
            code = RollupErrorCode.INVALID_MATCHER
        return cls(message, issues, code=code)


class RollupNotFoundError(RollupError):
    code = RollupErrorCode.NOT_FOUND
    http_status = 404

    def __init__(self, rollup_id: str) -> None:
        super().__init__(
            f"Rollup not found: {rollup_id}", details={"rollupId": rollup_id}
        )
        self.rollup_id = rollup_id


class RollupExecutionNotFoundError(RollupError):
    code = RollupErrorCode.EXECUTION_NOT_FOUND
    http_status = 404

    def __init__(self, execution_id: str) -> None:
        super().__init__(
            f"Rollup execution not found: {execution_id}",
            details={"executionId": execution_id},
        )
        self.execution_id = execution_id


class RollupVersionConflictError(RollupError):
    code = RollupErrorCode.VERSION_CONFLICT
    http_status = 409

    def __init__(self, rollup_id: str, expected: int, current: int) -> None:
        super().__init__(
            f"Rollup {rollup_id} was modified concurrently "
            f"(expected version {expected}, current version {current})",
            details={
                "rollupId": rollup_id,
                "expectedVersion": expected,
                "currentVersion": current,
            },
        )
        self.expected_version = expected
        self.current_version = current


class RollupExecutionInProgressError(RollupError):
    code = RollupErrorCode.EXECUTION_IN_PROGRESS
    http_status = 409

    def __init__(
        self,
        rollup_id: str,
        current_status: str,
        active_execution_id: Optional[str] = None,
    ) -> None:
        super().__init__(
            f"Rollup {rollup_id} already has an execution in progress",
            details={
                "rollupId": rollup_id,
                "currentStatus": current_status,
                "activeExecutionId": active_execution_id,
            },
        )
        self.current_status = current_status
        self.active_execution_id = active_execution_id


class RollupExecutionNotRunningError(RollupError):
    code = RollupErrorCode.EXECUTION_NOT_RUNNING
    http_status = 409

    def __init__(self, execution_id: str, status: str) -> None:
        super().__init__(
            f"Rollup execution {execution_id} is {status}; only running executions can be cancelled",
            details={"executionId": execution_id, "status": status},
        )
        self.status = status


class RollupExecutionError(RollupError):
    """A phase-specific execution failure with whatever stats were accumulated."""

    code = RollupErrorCode.EXECUTION_FAILED
    http_status = 500

    def __init__(
        self,
        message: str,
        phase: Optional[str] = None,
        partial_stats: Optional[Dict[str, Any]] = None,
        *,
        retryable: bool = False,
        cause_code: Optional[str] = None,
    ) -> None:
        details: Dict[str, Any] = {"phase": phase}
        if partial_stats:
            details["partialStats"] = partial_stats
        if cause_code:
            details["causeCode"] = cause_code
        super().__init__(message, details=details, retryable=retryable)
        self.phase = phase
        self.partial_stats = partial_stats or {}


class RollupMergeError(RollupError):
    code = RollupErrorCode.MERGE_FAILED
    http_status = 500


class RollupMergeConflictError(RollupMergeError):
    code = RollupErrorCode.MERGE_CONFLICT
    http_status = 409

    def __init__(self, field: str, values: List[Any], node_ids: List[str]) -> None:
        super().__init__(
            f"Conflicting values for '{field}' across {len(node_ids)} source nodes",
            details={"field": field, "values": values, "nodeIds": node_ids},
        )
        self.field = field
        self.values = values
        self.node_ids = node_ids


class RollupLimitExceededError(RollupError):
    http_status = 400

    _CODES = {
        "nodes": RollupErrorCode.MAX_NODES_EXCEEDED,
        "repositories": RollupErrorCode.MAX_REPOSITORIES_EXCEEDED,
        "matchers": RollupErrorCode.INVALID_CONFIGURATION,
    }

    def __init__(self, limit_type: str, actual: int, maximum: int) -> None:
        super().__init__(
            f"Maximum {limit_type} exceeded: {actual} > {maximum}",
            code=self._CODES.get(limit_type, RollupErrorCode.INVALID_CONFIGURATION),
            details={"limitType": limit_type, "actual": actual, "maximum": maximum},
        )
        self.limit_type = limit_type
        self.actual = actual
        self.maximum = maximum


class RollupTimeoutError(RollupError):
    code = RollupErrorCode.EXECUTION_TIMEOUT
    http_status = 504

    def __init__(self, execution_id: str, timeout_seconds: float) -> None:
        super().__init__(
            f"Rollup execution {execution_id} timed out after {timeout_seconds}s",
            details={"executionId": execution_id, "timeoutSeconds": timeout_seconds},
        )
        self.timeout_seconds = timeout_seconds


class RollupCancelledError(RollupError):
    code = RollupErrorCode.EXECUTION_CANCELLED
    http_status = 409

    def __init__(self, execution_id: str, reason: Optional[str] = None) -> None:
        super().__init__(
            f"Rollup execution {execution_id} was cancelled",
            details={"executionId": execution_id, "reason": reason},
        )
        self.reason = reason


class RollupBlastRadiusError(RollupError):
    code = RollupErrorCode.BLAST_RADIUS_FAILED
    http_status = 400


class RepositoryNotFoundError(RollupError):
    code = RollupErrorCode.REPOSITORY_NOT_FOUND
    http_status = 404

    def __init__(self, repository_id: str) -> None:
        super().__init__(
            f"Repository not found: {repository_id}",
            details={"repositoryId": repository_id},
        )
        self.repository_id = repository_id


class ScanNotFoundError(RollupError):
    code = RollupErrorCode.SCAN_NOT_FOUND
    http_status = 404

    def __init__(self, repository_id: str, scan_id: Optional[str]) -> None:
        super().__init__(
            f"Scan {scan_id or 'latest'} not found for repository {repository_id}",
            details={"repositoryId": repository_id, "scanId": scan_id},
        )
        self.repository_id = repository_id
        self.scan_id = scan_id


class GraphSourceUnavailableError(RollupError):
    code = RollupErrorCode.GRAPH_SOURCE_UNAVAILABLE
    http_status = 503
    is_retryable = True


class RollupStorageError(RollupError):
    code = RollupErrorCode.STORAGE_FAILED
    http_status = 500
    is_retryable = True


def is_retryable_error(exc: BaseException) -> bool:
    """Whether the executor may retry after ``exc``.

    Rollup errors decide for themselves; connection and timeout errors from
    collaborators are transient; everything else is treated as a defect.
    """
    if isinstance(exc, RollupError):
        return exc.is_retryable
    return isinstance(exc, (ConnectionError, TimeoutError))


def error_code_of(exc: BaseException) -> str:
    if isinstance(exc, RollupError):
        return exc.code
    return RollupErrorCode.EXECUTION_FAILED
