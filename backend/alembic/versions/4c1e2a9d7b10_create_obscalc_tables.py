"""create_obscalc_tables

Revision ID: 4c1e2a9d7b10
Revises:
Create Date: 2026-10-16 09:12:44.318201

"""

from typing import Sequence, Union

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "4c1e2a9d7b10"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

STATE_VALUES = ("pending", "retry", "calculating", "ready", "failed")


def _state_column():
    return sa.Column(
        "state",
        sa.Enum(*STATE_VALUES, name="calculation_state", native_enum=False),
        nullable=False,
    )


def upgrade() -> None:
    op.create_table(
        "calls_for_proposals",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("instruments", sa.JSON(), nullable=False),
        sa.Column("active_start", sa.DateTime(), nullable=True),
        sa.Column("active_end", sa.DateTime(), nullable=True),
        sa.Column("added", sa.DateTime(), nullable=False),
        sa.Column("updated", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_table(
        "programs",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("proposal_status", sa.String(), nullable=False),
        sa.Column("cfp_id", sa.String(), nullable=True),
        sa.Column("added", sa.DateTime(), nullable=False),
        sa.Column("updated", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["cfp_id"], ["calls_for_proposals.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_table(
        "observations",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("program_id", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=True),
        sa.Column("workflow_user_state", sa.String(), nullable=True),
        sa.Column("calibration_role", sa.String(), nullable=True),
        sa.Column("duration_seconds", sa.Float(), nullable=True),
        sa.Column("added", sa.DateTime(), nullable=False),
        sa.Column("updated", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["program_id"], ["programs.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_table(
        "targets",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("program_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("ra", sa.Float(), nullable=True),
        sa.Column("dec", sa.Float(), nullable=True),
        sa.Column("existence", sa.String(), nullable=False),
        sa.Column("calibration_role", sa.String(), nullable=True),
        sa.Column("added", sa.DateTime(), nullable=False),
        sa.Column("updated", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["program_id"], ["programs.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_table(
        "asterism_targets",
        sa.Column("observation_id", sa.String(), nullable=False),
        sa.Column("target_id", sa.String(), nullable=False),
        sa.Column("program_id", sa.String(), nullable=False),
        sa.ForeignKeyConstraint(["observation_id"], ["observations.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["target_id"], ["targets.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("observation_id", "target_id"),
    )
    op.create_table(
        "observing_modes",
        sa.Column("observation_id", sa.String(), nullable=False),
        sa.Column("instrument", sa.String(), nullable=False),
        sa.Column("mode_type", sa.String(), nullable=False),
        sa.Column("params", sa.JSON(), nullable=False),
        sa.Column("updated", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["observation_id"], ["observations.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("observation_id"),
    )
    op.create_table(
        "configuration_requests",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("program_id", sa.String(), nullable=False),
        sa.Column("instrument", sa.String(), nullable=False),
        sa.Column("mode_type", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("added", sa.DateTime(), nullable=False),
        sa.Column("updated", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["program_id"], ["programs.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_table(
        "datasets",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("observation_id", sa.String(), nullable=False),
        sa.Column("filename", sa.String(), nullable=False),
        sa.Column("qa_state", sa.String(), nullable=True),
        sa.Column("added", sa.DateTime(), nullable=False),
        sa.Column("updated", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["observation_id"], ["observations.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_table(
        "obscalc",
        sa.Column("observation_id", sa.String(), nullable=False),
        sa.Column("program_id", sa.String(), nullable=False),
        _state_column(),
        sa.Column("last_invalidation", sa.DateTime(), nullable=False),
        sa.Column("last_update", sa.DateTime(), nullable=True),
        sa.Column("retry_at", sa.DateTime(), nullable=True),
        sa.Column("failure_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("result", sa.JSON(), nullable=True),
        sa.Column("error_message", sa.String(), nullable=True),
        sa.CheckConstraint("failure_count >= 0", name="ck_obscalc_failure_count"),
        sa.CheckConstraint(
            "state IN ('retry', 'calculating') OR (retry_at IS NULL AND failure_count = 0)",
            name="ck_obscalc_retry_fields",
        ),
        sa.CheckConstraint(
            "state != 'retry' OR retry_at IS NOT NULL", name="ck_obscalc_retry_at_defined"
        ),
        sa.ForeignKeyConstraint(["observation_id"], ["observations.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("observation_id"),
    )
    with op.batch_alter_table("obscalc") as batch_op:
        batch_op.create_index("ix_obscalc_program_id", ["program_id"])
        batch_op.create_index("ix_obscalc_last_invalidation", ["last_invalidation"])

    op.create_table(
        "telluric_resolutions",
        sa.Column("observation_id", sa.String(), nullable=False),
        sa.Column("program_id", sa.String(), nullable=False),
        sa.Column("science_observation_id", sa.String(), nullable=False),
        _state_column(),
        sa.Column("last_invalidation", sa.DateTime(), nullable=False),
        sa.Column("last_update", sa.DateTime(), nullable=True),
        sa.Column("retry_at", sa.DateTime(), nullable=True),
        sa.Column("failure_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("resolved_target_id", sa.String(), nullable=True),
        sa.Column("error_message", sa.String(), nullable=True),
        sa.CheckConstraint("failure_count >= 0", name="ck_telluric_failure_count"),
        sa.CheckConstraint(
            "state != 'retry' OR retry_at IS NOT NULL", name="ck_telluric_retry_at_defined"
        ),
        sa.ForeignKeyConstraint(["observation_id"], ["observations.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(
            ["science_observation_id"], ["observations.id"], ondelete="CASCADE"
        ),
        sa.ForeignKeyConstraint(["resolved_target_id"], ["targets.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("observation_id"),
    )
    with op.batch_alter_table("telluric_resolutions") as batch_op:
        batch_op.create_index(
            "ix_telluric_resolutions_science_observation_id", ["science_observation_id"]
        )

    op.create_table(
        "invalidation_sweeps",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("program_id", sa.String(), nullable=True),
        sa.Column("cfp_id", sa.String(), nullable=True),
        sa.Column("change_time", sa.DateTime(), nullable=False),
        sa.Column("added", sa.DateTime(), nullable=False),
        sa.Column("processed_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    with op.batch_alter_table("invalidation_sweeps") as batch_op:
        batch_op.create_index("ix_invalidation_sweeps_program_id", ["program_id"])
        batch_op.create_index("ix_invalidation_sweeps_cfp_id", ["cfp_id"])


def downgrade() -> None:
    op.drop_table("invalidation_sweeps")
    op.drop_table("telluric_resolutions")
    op.drop_table("obscalc")
    op.drop_table("datasets")
    op.drop_table("configuration_requests")
    op.drop_table("observing_modes")
    op.drop_table("asterism_targets")
    op.drop_table("targets")
    op.drop_table("observations")
    op.drop_table("programs")
    op.drop_table("calls_for_proposals")
