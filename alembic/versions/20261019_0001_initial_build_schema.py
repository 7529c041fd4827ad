"""Initial shared build store schema."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "build_builds",
        sa.Column("build_id", sa.String(), nullable=False),
        sa.Column("platform", sa.String(), nullable=False),
        sa.Column("options", sa.Text(), nullable=False),
        sa.Column("start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("stop", sa.DateTime(timezone=True), nullable=True),
        sa.Column("progress_stopped", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.PrimaryKeyConstraint("build_id"),
    )

    op.create_table(
        "build_workers",
        sa.Column("worker_id", sa.String(), nullable=False),
        sa.Column("build_id", sa.String(), nullable=False),
        sa.Column("hostname", sa.String(), nullable=False),
        sa.Column("pid", sa.Integer(), nullable=False),
        sa.Column("process_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("stamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("stop", sa.DateTime(timezone=True), nullable=True),
        sa.Column("serial", sa.BigInteger(), nullable=False, server_default="0"),
        sa.PrimaryKeyConstraint("worker_id"),
    )
    op.create_index("ix_build_workers_build_id", "build_workers", ["build_id"])
    op.create_index("ix_build_workers_serial", "build_workers", ["serial"])

    op.create_table(
        "build_progress",
        sa.Column("serial", sa.BigInteger(), autoincrement=False, nullable=False),
        sa.Column("kind", sa.Integer(), nullable=False),
        sa.Column("text", sa.Text(), nullable=False),
        sa.Column("verbose", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("build_id", sa.String(), nullable=False),
        sa.PrimaryKeyConstraint("build_id", "serial"),
    )

    op.create_table(
        "build_sessions",
        sa.Column("build_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("deps", sa.Text(), nullable=False),
        sa.Column("ancestors", sa.Text(), nullable=False),
        sa.Column("options", sa.Text(), nullable=False),
        sa.Column("sources", sa.Text(), nullable=False),
        sa.Column("timeout_ms", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("old_time_ms", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("old_command_timings", sa.LargeBinary(), nullable=True),
        sa.PrimaryKeyConstraint("build_id", "name"),
    )

    op.create_table(
        "build_pending",
        sa.Column("build_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("deps", sa.Text(), nullable=False),
        sa.Column("info", sa.Text(), nullable=False),
        sa.PrimaryKeyConstraint("build_id", "name"),
    )

    op.create_table(
        "build_running",
        sa.Column("build_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("worker_id", sa.String(), nullable=False),
        sa.Column("hostname", sa.String(), nullable=False),
        sa.Column("numa_node", sa.Integer(), nullable=True),
        sa.PrimaryKeyConstraint("build_id", "name"),
    )
    op.create_index("ix_build_running_worker_id", "build_running", ["worker_id"])

    op.create_table(
        "build_results",
        sa.Column("build_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("worker_id", sa.String(), nullable=False),
        sa.Column("hostname", sa.String(), nullable=False),
        sa.Column("numa_node", sa.Integer(), nullable=True),
        sa.Column("rc", sa.Integer(), nullable=False),
        sa.Column("out", sa.Text(), nullable=False),
        sa.Column("err", sa.Text(), nullable=False),
        sa.Column("timing_elapsed_ms", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("timing_cpu_ms", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("timing_gc_ms", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("output_shasum", sa.Text(), nullable=False),
        sa.Column("current", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.PrimaryKeyConstraint("build_id", "name"),
    )
    op.create_index("ix_build_results_worker_id", "build_results", ["worker_id"])

    op.create_table(
        "build_node_info",
        sa.Column("hostname", sa.String(), nullable=False),
        sa.Column("numa_next", sa.Integer(), nullable=False, server_default="0"),
        sa.PrimaryKeyConstraint("hostname"),
    )

    op.create_table(
        "session_info",
        sa.Column("session_name", sa.String(), nullable=False),
        sa.Column("sources", sa.Text(), nullable=False),
        sa.Column("input_shasum", sa.Text(), nullable=False),
        sa.Column("output_shasum", sa.Text(), nullable=False),
        sa.Column("return_code", sa.Integer(), nullable=False),
        sa.Column("build_id", sa.String(), nullable=False, server_default=""),
        sa.Column("elapsed_ms", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("command_timings", sa.LargeBinary(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("session_name"),
    )


def downgrade() -> None:
    op.drop_table("session_info")
    op.drop_table("build_node_info")
    op.drop_table("build_results")
    op.drop_table("build_running")
    op.drop_table("build_pending")
    op.drop_table("build_sessions")
    op.drop_table("build_progress")
    op.drop_table("build_workers")
    op.drop_table("build_builds")
