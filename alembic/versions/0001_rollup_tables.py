"""Add rollup configuration, execution, merged graph and event tables

Revision ID: 0001_rollup_tables
Revises:
Create Date: 2026-10-18
"""

import sqlalchemy as sa
from alembic import op

revision = "0001_rollup_tables"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "rollup_configurations",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("tenant_id", sa.String(length=64), nullable=False, index=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("repository_ids", sa.JSON, nullable=False),
        sa.Column("scan_ids", sa.JSON, nullable=True),
        sa.Column("matchers", sa.JSON, nullable=False),
        sa.Column("include_node_types", sa.JSON, nullable=True),
        sa.Column("exclude_node_types", sa.JSON, nullable=True),
        sa.Column("preserve_edge_types", sa.JSON, nullable=True),
        sa.Column("merge_options", sa.JSON, nullable=False),
        sa.Column("schedule", sa.JSON, nullable=True),
        sa.Column("version", sa.Integer, nullable=False),
        sa.Column("created_by", sa.String(length=128), nullable=True),
        sa.Column("updated_by", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_executed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_rollup_configurations_tenant_status",
        "rollup_configurations",
        ["tenant_id", "status"],
    )

    op.create_table(
        "rollup_executions",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column(
            "rollup_id",
            sa.String(length=64),
            sa.ForeignKey("rollup_configurations.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        sa.Column("tenant_id", sa.String(length=64), nullable=False, index=True),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("phase", sa.String(length=32), nullable=True),
        sa.Column("scan_ids", sa.JSON, nullable=False),
        sa.Column("stats", sa.JSON, nullable=True),
        sa.Column("matches", sa.JSON, nullable=True),
        sa.Column("merged_nodes", sa.JSON, nullable=True),
        sa.Column("progress", sa.Integer, nullable=False),
        sa.Column("attempt", sa.Integer, nullable=False),
        sa.Column("retry_of", sa.String(length=64), nullable=True),
        sa.Column("error_code", sa.String(length=64), nullable=True),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("error_details", sa.JSON, nullable=True),
        sa.Column("triggered_by", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_rollup_executions_rollup_created",
        "rollup_executions",
        ["rollup_id", "created_at"],
    )

    op.create_table(
        "rollup_merged_graphs",
        sa.Column(
            "execution_id",
            sa.String(length=64),
            sa.ForeignKey("rollup_executions.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("rollup_id", sa.String(length=64), nullable=False, index=True),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("merged_nodes", sa.JSON, nullable=False),
        sa.Column("passthrough_nodes", sa.JSON, nullable=False),
        sa.Column("edges", sa.JSON, nullable=False),
        sa.Column("repository_names", sa.JSON, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )

    # Lifecycle event log for replay
    op.create_table(
        "rollup_events",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("stream_id", sa.String(length=128), nullable=False, index=True),
        sa.Column("seq", sa.Integer, nullable=False, index=True),
        sa.Column("event_id", sa.String(length=64), nullable=False),
        sa.Column("type", sa.String(length=64), nullable=False),
        sa.Column("tenant_id", sa.String(length=64), nullable=False, index=True),
        sa.Column("payload", sa.JSON, nullable=False),
        sa.Column("metadata", sa.JSON, nullable=False),
        sa.Column("schema_version", sa.Integer, nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
            index=True,
        ),
        sa.Column("correlation_id", sa.String(length=128), nullable=True),
    )
    op.create_index(
        "ix_rollup_events_stream_seq", "rollup_events", ["stream_id", "seq"], unique=True
    )
    op.create_index(
        "ix_rollup_events_event_id", "rollup_events", ["event_id"], unique=True
    )


def downgrade() -> None:
    op.drop_index("ix_rollup_events_event_id", table_name="rollup_events")
    op.drop_index("ix_rollup_events_stream_seq", table_name="rollup_events")
    op.drop_table("rollup_events")
    op.drop_table("rollup_merged_graphs")
    op.drop_index("ix_rollup_executions_rollup_created", table_name="rollup_executions")
    op.drop_table("rollup_executions")
    op.drop_index(
        "ix_rollup_configurations_tenant_status", table_name="rollup_configurations"
    )
    op.drop_table("rollup_configurations")
