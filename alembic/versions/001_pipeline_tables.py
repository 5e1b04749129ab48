"""Create pipeline tables for deals, the activity log, and notifications.

Revision ID: 001_pipeline_tables
Revises:
Create Date: 2026-10-19

Creates three tables:
- pipeline_cards: deals shown on the kanban board
- activities: append-only audit trail of deal mutations
- notifications: alerts raised by stage moves

Activities and notifications point at deals only through metadata->dealId.
No foreign key constraints, so audit rows survive a hard delete.
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

# revision identifiers, used by Alembic.
revision: str = "001_pipeline_tables"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # ── pipeline_cards table ────────────────────────────────────────────

    op.create_table(
        "pipeline_cards",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("company_name", sa.Text(), nullable=False),
        sa.Column("contact_name", sa.Text(), nullable=True),
        sa.Column("contact_email", sa.Text(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column(
            "value",
            sa.Numeric(14, 2),
            server_default=sa.text("0"),
            nullable=False,
        ),
        sa.Column(
            "currency",
            sa.Text(),
            server_default=sa.text("'USD'"),
            nullable=False,
        ),
        sa.Column(
            "probability",
            sa.Integer(),
            server_default=sa.text("0"),
            nullable=False,
        ),
        sa.Column(
            "current_stage",
            sa.Text(),
            server_default=sa.text("'lead'"),
            nullable=False,
        ),
        sa.Column(
            "status",
            sa.Text(),
            server_default=sa.text("'active'"),
            nullable=False,
        ),
        sa.Column("source", sa.Text(), nullable=True),
        sa.Column("product", sa.Text(), nullable=True),
        sa.Column("assigned_to", sa.Text(), nullable=True),
        sa.Column("expected_close_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_step", sa.Text(), nullable=True),
        sa.Column(
            "tags",
            JSONB(),
            server_default=sa.text("'[]'::jsonb"),
            nullable=False,
        ),
        sa.Column(
            "history",
            JSONB(),
            server_default=sa.text("'[]'::jsonb"),
            nullable=False,
        ),
        sa.Column(
            "metadata",
            JSONB(),
            server_default=sa.text("'{}'::jsonb"),
            nullable=False,
        ),
        sa.Column("created_by", sa.Integer(), nullable=True),
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
    )
    op.create_index("idx_pipeline_cards_stage", "pipeline_cards", ["current_stage"])
    op.create_index("idx_pipeline_cards_status", "pipeline_cards", ["status"])
    op.create_index("idx_pipeline_cards_assigned_to", "pipeline_cards", ["assigned_to"])

    # ── activities table ────────────────────────────────────────────────

    op.create_table(
        "activities",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("type", sa.String(50), nullable=False),
        sa.Column("action", sa.String(50), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("metadata", JSONB(), nullable=True),
        sa.Column(
            "timestamp",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column("user_id", sa.Integer(), nullable=True),
    )
    op.create_index(
        "idx_activities_type_action_timestamp",
        "activities",
        ["type", "action", "timestamp"],
    )

    # ── notifications table ─────────────────────────────────────────────

    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("type", sa.String(20), nullable=False),
        sa.Column(
            "read",
            sa.Boolean(),
            server_default=sa.text("false"),
            nullable=False,
        ),
        sa.Column("metadata", JSONB(), nullable=True),
        sa.Column(
            "timestamp",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column("user_id", sa.Integer(), nullable=True),
    )


def downgrade() -> None:
    op.drop_table("notifications")
    op.drop_index("idx_activities_type_action_timestamp", table_name="activities")
    op.drop_table("activities")
    op.drop_index("idx_pipeline_cards_assigned_to", table_name="pipeline_cards")
    op.drop_index("idx_pipeline_cards_status", table_name="pipeline_cards")
    op.drop_index("idx_pipeline_cards_stage", table_name="pipeline_cards")
    op.drop_table("pipeline_cards")
