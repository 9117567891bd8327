"""requirement_lifecycle_tables

Creates the requirement lifecycle tables:
  - requirements    — tracked requirements with derived status columns
  - subtasks        — ordered delivery steps owned by a requirement
  - review_levels   — level 1 / optional level 2 scheduling review
  - audit_logs      — append-only trail of committed edits

Tables created conditionally (IF NOT EXISTS semantics) so the migration is
safe against databases that already received them via db.create_all().

Revision ID: 3f1a9c2e7b10
Revises:
Create Date: 2024-04-22 09:00:00.000000
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = "3f1a9c2e7b10"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing = set(inspector.get_table_names())

    # ── Requirements ──────────────────────────────────────────────────────
    if "requirements" not in existing:
        op.create_table(
            "requirements",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("title", sa.String(length=300), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("priority", sa.String(length=20), nullable=False,
                      server_default="medium", comment="low | medium | high | urgent"),
            sa.Column("planned_version", sa.String(length=50), nullable=True,
                      comment="Release version; only set once the review gate is approved"),
            sa.Column("aggregate_status", sa.String(length=30), nullable=False,
                      server_default="awaiting-prototype",
                      comment="Derived from subtasks — never written directly"),
            sa.Column("overall_review", sa.String(length=20), nullable=False,
                      server_default="pending",
                      comment="Derived from review levels — never written directly"),
            sa.Column("created_by", sa.String(length=150), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )

    # ── Subtasks ──────────────────────────────────────────────────────────
    if "subtasks" not in existing:
        op.create_table(
            "subtasks",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("requirement_id", sa.String(length=36), nullable=False),
            sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("name", sa.String(length=300), nullable=False, server_default=""),
            sa.Column("kind", sa.String(length=20), nullable=False,
                      server_default="custom", comment="predefined | custom"),
            sa.Column("phase", sa.String(length=20), nullable=False, server_default="other",
                      comment="Derived from name — prototype | ui | development | testing | acceptance | other"),
            sa.Column("status", sa.String(length=20), nullable=False,
                      server_default="not-started",
                      comment="not-started | in-progress | completed | paused"),
            sa.Column("executor_id", sa.String(length=64), nullable=True),
            sa.Column("department_id", sa.String(length=64), nullable=True),
            sa.Column("estimated_start", sa.DateTime(timezone=True), nullable=True),
            sa.Column("estimated_end", sa.DateTime(timezone=True), nullable=True),
            sa.Column("actual_start", sa.DateTime(timezone=True), nullable=True),
            sa.Column("actual_end", sa.DateTime(timezone=True), nullable=True),
            sa.Column("estimated_duration", sa.Integer(), nullable=False,
                      server_default="0", comment="hours"),
            sa.Column("actual_duration", sa.Integer(), nullable=False,
                      server_default="0", comment="hours"),
            sa.Column("delay_status", sa.String(length=20), nullable=False,
                      server_default="unknown", comment="on-time | late | early | unknown"),
            sa.ForeignKeyConstraint(["requirement_id"], ["requirements.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_subtasks_requirement_id", "subtasks", ["requirement_id"])
        op.create_index("ix_subtasks_requirement_position", "subtasks",
                        ["requirement_id", "position"])

    # ── Review Levels ─────────────────────────────────────────────────────
    if "review_levels" not in existing:
        op.create_table(
            "review_levels",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("requirement_id", sa.String(length=36), nullable=False),
            sa.Column("level", sa.Integer(), nullable=False, comment="1 | 2"),
            sa.Column("reviewer_id", sa.String(length=64), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False,
                      server_default="pending", comment="pending | approved | rejected"),
            sa.Column("opinion", sa.Text(), nullable=True),
            sa.Column("reviewed_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["requirement_id"], ["requirements.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("requirement_id", "level", name="uq_review_level_per_requirement"),
        )
        op.create_index("ix_review_levels_requirement_id", "review_levels", ["requirement_id"])

    # ── Audit Logs ────────────────────────────────────────────────────────
    if "audit_logs" not in existing:
        op.create_table(
            "audit_logs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("requirement_id", sa.String(length=36), nullable=False,
                      comment="Owning requirement (kept after the requirement is deleted)"),
            sa.Column("entity_type", sa.String(length=30), nullable=False,
                      comment="requirement | subtask | review_level"),
            sa.Column("entity_id", sa.String(length=36), nullable=False),
            sa.Column("action", sa.String(length=60), nullable=False),
            sa.Column("actor", sa.String(length=150), nullable=False, server_default="system"),
            sa.Column("diff_json", sa.Text(), nullable=True),
            sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_audit_entity", "audit_logs", ["entity_type", "entity_id"])
        op.create_index("idx_audit_requirement", "audit_logs", ["requirement_id"])
        op.create_index("idx_audit_ts", "audit_logs", ["timestamp"])


def downgrade():
    op.drop_table("audit_logs")
    op.drop_table("review_levels")
    op.drop_table("subtasks")
    op.drop_table("requirements")
