"""
Rollup configuration validation.

Runs before anything is persisted or executed; every problem found is
reported at once as a ``RollupConfigurationError`` carrying one
``ValidationIssue`` per problem. Count limits are checked first and raise
``RollupLimitExceededError`` on their own.
"""

from __future__ import annotations

import logging
import re
from typing import List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .errors import (
    RollupConfigurationError,
    RollupErrorCode,
    RollupLimitExceededError,
    ValidationIssue,
)
from .matchers import create_matcher
from .matchers.base import ConfigIssue
from .types import RollupConfiguration

logger = logging.getLogger(__name__)

MIN_REPOSITORIES = 2
_CRON_FIELD = re.compile(r"^[\d*/,\-A-Za-z?LW#]+$")


def _cron_is_valid(expression: str) -> bool:
    fields = expression.split()
    return len(fields) == 5 and all(_CRON_FIELD.match(f) for f in fields)


def validate_rollup_config(
    config: RollupConfiguration,
    *,
    max_repositories: int,
    max_matchers: int,
) -> List[ConfigIssue]:
    """
    Validate a configuration, raising on the first limit breach or on any
    validation error.

    Returns:
        Matcher warnings (valid but questionable settings)
    """
    if len(config.repository_ids) > max_repositories:
        raise RollupLimitExceededError(
            "repositories", len(config.repository_ids), max_repositories
        )
    if len(config.matchers) > max_matchers:
        raise RollupLimitExceededError("matchers", len(config.matchers), max_matchers)

    issues: List[ValidationIssue] = []
    warnings: List[ConfigIssue] = []
    invalid = RollupErrorCode.INVALID_CONFIGURATION

    if not config.name.strip():
        issues.append(ValidationIssue("name", invalid, "Name must not be blank"))

    repos = config.repository_ids
    if len(repos) < MIN_REPOSITORIES:
        issues.append(
            ValidationIssue(
                "repositoryIds",
                invalid,
                f"At least {MIN_REPOSITORIES} repositories are required, got {len(repos)}",
            )
        )
    duplicates = sorted({r for r in repos if repos.count(r) > 1})
    if duplicates:
        issues.append(
            ValidationIssue(
                "repositoryIds",
                invalid,
                f"Duplicate repository ids: {', '.join(duplicates)}",
            )
        )
    if any(not r.strip() for r in repos):
        issues.append(
            ValidationIssue("repositoryIds", invalid, "Repository ids must not be blank")
        )

    if config.scan_ids is not None and len(config.scan_ids) != len(repos):
        issues.append(
            ValidationIssue(
                "scanIds",
                invalid,
                "scanIds must list one scan per repository, in repositoryIds order",
            )
        )

    if not config.enabled_matchers():
        issues.append(
            ValidationIssue("matchers", invalid, "At least one enabled matcher is required")
        )
    for index, matcher_config in enumerate(config.matchers):
        result = create_matcher(matcher_config).validate_config()
        for error in result.errors:
            field = f"matchers.{index}.{error.field}" if error.field else f"matchers.{index}"
            issues.append(
                ValidationIssue(
                    field,
                    RollupErrorCode.INVALID_MATCHER,
                    f"{error.message} ({error.code})",
                )
            )
        for warning in result.warnings:
            warning.field = (
                f"matchers.{index}.{warning.field}" if warning.field else f"matchers.{index}"
            )
            warnings.append(warning)

    include = set(config.include_node_types or ())
    exclude = set(config.exclude_node_types or ())
    overlap = sorted(include & exclude)
    if overlap:
        issues.append(
            ValidationIssue(
                "excludeNodeTypes",
                invalid,
                f"Node types both included and excluded: {', '.join(overlap)}",
            )
        )

    max_nodes = config.merge_options.max_nodes
    if max_nodes is not None and max_nodes < 1:
        issues.append(
            ValidationIssue(
                "mergeOptions.maxNodes", invalid, "maxNodes must be a positive integer"
            )
        )

    issues.extend(_validate_schedule(config))

    if issues:
        raise RollupConfigurationError.from_issues(issues)

    for warning in warnings:
        logger.warning(
            f"Rollup '{config.name}' matcher warning at {warning.field}: "
            f"{warning.message} ({warning.code})"
        )
    return warnings


def _validate_schedule(config: RollupConfiguration) -> List[ValidationIssue]:
    schedule = config.schedule
    if schedule is None:
        return []
    issues: List[ValidationIssue] = []
    invalid = RollupErrorCode.INVALID_CONFIGURATION
    cron: Optional[str] = schedule.cron
    if schedule.enabled and not cron and not schedule.on_scan_complete:
        issues.append(
            ValidationIssue(
                "schedule",
                invalid,
                "An enabled schedule needs a cron expression or onScanComplete",
            )
        )
    if cron and not _cron_is_valid(cron):
        issues.append(
            ValidationIssue(
                "schedule.cron", invalid, f"Invalid cron expression: {cron!r}"
            )
        )
    try:
        ZoneInfo(schedule.timezone)
    except (ZoneInfoNotFoundError, ValueError, OSError):
        issues.append(
            ValidationIssue(
                "schedule.timezone", invalid, f"Unknown timezone: {schedule.timezone!r}"
            )
        )
    return issues
