"""add badge claims and badge outbox

Revision ID: 0002_badge_claims
Revises: 0001_pogpp
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0002_badge_claims"
down_revision = "0001_pogpp"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "badge_claims",
        sa.Column("claim_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("visit_id", sa.String(), nullable=False),
        sa.Column("badge_category_id", sa.Integer(), nullable=False),
        sa.Column("wallet_address", sa.String(length=42), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("token_id", sa.String(), nullable=True),
        sa.Column("contract_ref", sa.String(length=42), nullable=True),
        sa.Column("tx_ref", sa.String(length=66), nullable=True),
        sa.Column("metadata_ref", sa.String(length=100), nullable=True),
        sa.Column("minted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.user_id"]),
        sa.ForeignKeyConstraint(["visit_id"], ["visits.visit_id"]),
        sa.PrimaryKeyConstraint("claim_id"),
        sa.UniqueConstraint("user_id", "badge_category_id", name="uq_badge_claim_user_category"),
    )
    op.create_index("ix_badge_claims_user_id", "badge_claims", ["user_id"])
    op.create_index("ix_badge_claims_visit_id", "badge_claims", ["visit_id"], unique=True)
    op.create_index("ix_badge_claims_badge_category_id", "badge_claims", ["badge_category_id"])
    op.create_index("ix_badge_claims_status", "badge_claims", ["status"])
    # Reconciliation scans stale pending reservations.
    op.create_index(
        "ix_badge_claims_pending_updated_at",
        "badge_claims",
        ["updated_at"],
        postgresql_where=sa.text("status = 'pending'"),
    )

    op.create_table(
        "badge_outbox_events",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("aggregate_type", sa.String(), nullable=False),
        sa.Column("aggregate_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("topic", sa.String(), nullable=False),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_badge_outbox_events_aggregate_id", "badge_outbox_events", ["aggregate_id"])
    op.create_index("ix_badge_outbox_events_event_type", "badge_outbox_events", ["event_type"])
    op.create_index("ix_badge_outbox_events_status", "badge_outbox_events", ["status"])
    op.create_index(
        "ix_badge_outbox_events_status_created_at", "badge_outbox_events", ["status", "created_at"]
    )


def downgrade() -> None:
    op.drop_index("ix_badge_outbox_events_status_created_at", table_name="badge_outbox_events")
    op.drop_index("ix_badge_outbox_events_status", table_name="badge_outbox_events")
    op.drop_index("ix_badge_outbox_events_event_type", table_name="badge_outbox_events")
    op.drop_index("ix_badge_outbox_events_aggregate_id", table_name="badge_outbox_events")
    op.drop_table("badge_outbox_events")
    op.drop_index("ix_badge_claims_pending_updated_at", table_name="badge_claims")
    op.drop_index("ix_badge_claims_status", table_name="badge_claims")
    op.drop_index("ix_badge_claims_badge_category_id", table_name="badge_claims")
    op.drop_index("ix_badge_claims_visit_id", table_name="badge_claims")
    op.drop_index("ix_badge_claims_user_id", table_name="badge_claims")
    op.drop_table("badge_claims")
