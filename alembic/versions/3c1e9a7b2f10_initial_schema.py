"""initial_schema

Revision ID: 3c1e9a7b2f10
Revises:
Create Date: 2026-10-19 00:00:00.000000

Creates the 8 lifecycle tables, 4 PostgreSQL enum types and their indexes.
UUID defaults use the built-in ``gen_random_uuid()`` (PostgreSQL 13+).
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "3c1e9a7b2f10"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

# ── Enum type names (PostgreSQL CREATE TYPE) ────────────────────────────────
ENUM_TRANSITION_TYPE = postgresql.ENUM(
    "advance",
    "revert",
    "bulk_advance",
    "bulk_revert",
    name="transition_type",
    create_type=False,
)
ENUM_CROP_TASK_TYPE = postgresql.ENUM(
    "end_stage",
    "suspend_watering",
    "expected_harvest",
    name="crop_task_type",
    create_type=False,
)
ENUM_CROP_TASK_STATUS = postgresql.ENUM(
    "pending", "triggered", "error", "dismissed", name="crop_task_status", create_type=False
)
ENUM_CROP_PLAN_STATUS = postgresql.ENUM(
    "draft",
    "confirmed",
    "in_progress",
    "completed",
    "cancelled",
    name="crop_plan_status",
    create_type=False,
)


def _id_column() -> sa.Column:
    return sa.Column(
        "id",
        postgresql.UUID(as_uuid=True),
        server_default=sa.text("gen_random_uuid()"),
        nullable=False,
    )


def _audit_columns() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
    ]


def upgrade() -> None:
    # ── 1. Create enum types ────────────────────────────────────────────
    ENUM_TRANSITION_TYPE.create(op.get_bind(), checkfirst=True)
    ENUM_CROP_TASK_TYPE.create(op.get_bind(), checkfirst=True)
    ENUM_CROP_TASK_STATUS.create(op.get_bind(), checkfirst=True)
    ENUM_CROP_PLAN_STATUS.create(op.get_bind(), checkfirst=True)

    # ── 2. Catalog tables ───────────────────────────────────────────────

    # crop_stages
    op.create_table(
        "crop_stages",
        _id_column(),
        sa.Column("code", sa.String(50), nullable=False),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("color", sa.String(20), nullable=True),
        sa.Column("sort_order", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        *_audit_columns(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("code", name="uq_crop_stages_code"),
        sa.UniqueConstraint("sort_order", name="uq_crop_stages_sort_order"),
    )

    # recipes
    op.create_table(
        "recipes",
        _id_column(),
        sa.Column("variety_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("seed_soak_hours", sa.Float(), nullable=True),
        sa.Column("germination_days", sa.Float(), nullable=True),
        sa.Column("blackout_days", sa.Float(), nullable=True),
        sa.Column("light_days", sa.Float(), nullable=True),
        sa.Column("days_to_maturity", sa.Float(), nullable=True),
        sa.Column("expected_yield_grams", sa.Float(), nullable=True),
        sa.Column("buffer_percentage", sa.Float(), server_default=sa.text("0"), nullable=False),
        sa.Column("suspend_water_hours", sa.Float(), server_default=sa.text("0"), nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("lot_depleted", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        *_audit_columns(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_recipes_variety_id", "recipes", ["variety_id"])

    # aggregated_crop_plans
    op.create_table(
        "aggregated_crop_plans",
        _id_column(),
        sa.Column("variety_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("recipe_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("harvest_date", sa.Date(), nullable=False),
        sa.Column("total_grams_needed", sa.Float(), nullable=False),
        sa.Column("total_trays_needed", sa.Integer(), nullable=False),
        sa.Column("grams_per_tray", sa.Float(), nullable=False),
        sa.Column("plant_date", sa.Date(), nullable=False),
        sa.Column("seed_soak_date", sa.Date(), nullable=True),
        sa.Column(
            "status",
            ENUM_CROP_PLAN_STATUS,
            server_default=sa.text("'draft'"),
            nullable=False,
        ),
        sa.Column("calculation_details", postgresql.JSONB(), nullable=False),
        *_audit_columns(),
        sa.ForeignKeyConstraint(["recipe_id"], ["recipes.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_aggregated_crop_plans_key",
        "aggregated_crop_plans",
        ["variety_id", "harvest_date", "status"],
    )

    # ── 3. Batches and crops ────────────────────────────────────────────

    # crop_batches
    op.create_table(
        "crop_batches",
        _id_column(),
        sa.Column("recipe_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("order_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("crop_plan_id", postgresql.UUID(as_uuid=True), nullable=True),
        *_audit_columns(),
        sa.ForeignKeyConstraint(["recipe_id"], ["recipes.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(
            ["crop_plan_id"], ["aggregated_crop_plans.id"], ondelete="SET NULL"
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crop_batches_recipe_id", "crop_batches", ["recipe_id"])

    # crops
    op.create_table(
        "crops",
        _id_column(),
        sa.Column("batch_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("recipe_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("tray_number", sa.String(32), nullable=True),
        sa.Column("current_stage_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("soaking_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("germination_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("blackout_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("light_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("harvested_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("watering_suspended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        *_audit_columns(),
        sa.ForeignKeyConstraint(["batch_id"], ["crop_batches.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["recipe_id"], ["recipes.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["current_stage_id"], ["crop_stages.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crops_batch_stage", "crops", ["batch_id", "current_stage_id"])

    # ── 4. History, audit and tasks ─────────────────────────────────────

    # crop_stage_history
    op.create_table(
        "crop_stage_history",
        _id_column(),
        sa.Column("crop_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("batch_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("stage_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("entered_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("exited_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_by", postgresql.UUID(as_uuid=True), nullable=True),
        *_audit_columns(),
        sa.ForeignKeyConstraint(["crop_id"], ["crops.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["stage_id"], ["crop_stages.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_crop_stage_history_crop_open", "crop_stage_history", ["crop_id", "exited_at"]
    )
    op.create_index("ix_crop_stage_history_batch_id", "crop_stage_history", ["batch_id"])

    # crop_stage_transitions (append-only, no updated_at)
    op.create_table(
        "crop_stage_transitions",
        _id_column(),
        sa.Column("type", ENUM_TRANSITION_TYPE, nullable=False),
        sa.Column("batch_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("crop_count", sa.Integer(), nullable=False),
        sa.Column("from_stage_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("to_stage_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("transition_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "recorded_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("succeeded_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("failed_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("failed_crops", postgresql.JSONB(), nullable=False),
        sa.Column("metadata", postgresql.JSONB(), nullable=False),
        sa.Column("source", sa.String(50), nullable=True),
        sa.ForeignKeyConstraint(["from_stage_id"], ["crop_stages.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["to_stage_id"], ["crop_stages.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_crop_stage_transitions_batch_time",
        "crop_stage_transitions",
        ["batch_id", "transition_at"],
    )

    # crop_tasks
    op.create_table(
        "crop_tasks",
        _id_column(),
        sa.Column("crop_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("batch_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("recipe_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("task_type", ENUM_CROP_TASK_TYPE, nullable=False),
        sa.Column("stage_code", sa.String(50), nullable=False),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("triggered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "status",
            ENUM_CROP_TASK_STATUS,
            server_default=sa.text("'pending'"),
            nullable=False,
        ),
        sa.Column("details", postgresql.JSONB(), nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        *_audit_columns(),
        sa.ForeignKeyConstraint(["crop_id"], ["crops.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["recipe_id"], ["recipes.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crop_tasks_status_scheduled", "crop_tasks", ["status", "scheduled_at"])
    op.create_index("ix_crop_tasks_crop_stage", "crop_tasks", ["crop_id", "stage_code"])


def downgrade() -> None:
    # ── Drop tables in reverse dependency order ─────────────────────────
    op.drop_table("crop_tasks")
    op.drop_table("crop_stage_transitions")
    op.drop_table("crop_stage_history")
    op.drop_table("crops")
    op.drop_table("crop_batches")
    op.drop_table("aggregated_crop_plans")
    op.drop_table("recipes")
    op.drop_table("crop_stages")

    # ── Drop enum types ─────────────────────────────────────────────────
    ENUM_CROP_PLAN_STATUS.drop(op.get_bind(), checkfirst=True)
    ENUM_CROP_TASK_STATUS.drop(op.get_bind(), checkfirst=True)
    ENUM_CROP_TASK_TYPE.drop(op.get_bind(), checkfirst=True)
    ENUM_TRANSITION_TYPE.drop(op.get_bind(), checkfirst=True)
