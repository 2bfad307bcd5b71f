"""
Database models package.

Exports all SQLAlchemy models for the rollup service.
"""

from graphrollup.database.models.rollup import (
    RollupConfigurationRecord,
    RollupExecutionRecord,
    RollupMergedGraphRecord,
)

__all__ = [
    "RollupConfigurationRecord",
    "RollupExecutionRecord",
    "RollupMergedGraphRecord",
]
