"""initial users and visits schema

Revision ID: 0001_pogpp
Revises:
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_pogpp"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("wallet_address", sa.String(length=42), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("last_login_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("user_id"),
    )
    op.create_index("ix_users_wallet_address", "users", ["wallet_address"], unique=True)

    op.create_table(
        "visits",
        sa.Column("visit_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("nfc_tag_id", sa.String(length=100), nullable=False),
        sa.Column("latitude", sa.Float(), nullable=False),
        sa.Column("longitude", sa.Float(), nullable=False),
        sa.Column("accuracy_meters", sa.Float(), nullable=True),
        sa.Column("location_name", sa.String(length=200), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("fingerprint", sa.String(length=64), nullable=False),
        sa.Column("content_ref", sa.String(length=100), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("state_version", sa.Integer(), nullable=False),
        sa.Column("is_verified", sa.Boolean(), nullable=False),
        sa.Column("verified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.user_id"]),
        sa.PrimaryKeyConstraint("visit_id"),
    )
    op.create_index("ix_visits_user_id", "visits", ["user_id"])
    op.create_index("ix_visits_nfc_tag_id", "visits", ["nfc_tag_id"])
    op.create_index("ix_visits_fingerprint", "visits", ["fingerprint"], unique=True)
    op.create_index("ix_visits_status", "visits", ["status"])
    op.create_index("ix_visits_created_at", "visits", ["created_at"])
    # Recency duplicate check: (user, tag) within the window.
    op.create_index("ix_visits_user_tag_created", "visits", ["user_id", "nfc_tag_id", "created_at"])

    op.create_table(
        "visit_timeline",
        sa.Column("timeline_id", sa.String(), nullable=False),
        sa.Column("visit_id", sa.String(), nullable=False),
        sa.Column("from_state", sa.String(), nullable=True),
        sa.Column("to_state", sa.String(), nullable=False),
        sa.Column("reason", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["visit_id"], ["visits.visit_id"]),
        sa.PrimaryKeyConstraint("timeline_id"),
    )
    op.create_index("ix_visit_timeline_visit_id", "visit_timeline", ["visit_id"])

    op.create_table(
        "visit_outbox_events",
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
    op.create_index("ix_visit_outbox_events_aggregate_id", "visit_outbox_events", ["aggregate_id"])
    op.create_index("ix_visit_outbox_events_event_type", "visit_outbox_events", ["event_type"])
    op.create_index("ix_visit_outbox_events_status", "visit_outbox_events", ["status"])
    op.create_index(
        "ix_visit_outbox_events_status_created_at", "visit_outbox_events", ["status", "created_at"]
    )


def downgrade() -> None:
    op.drop_index("ix_visit_outbox_events_status_created_at", table_name="visit_outbox_events")
    op.drop_index("ix_visit_outbox_events_status", table_name="visit_outbox_events")
    op.drop_index("ix_visit_outbox_events_event_type", table_name="visit_outbox_events")
    op.drop_index("ix_visit_outbox_events_aggregate_id", table_name="visit_outbox_events")
    op.drop_table("visit_outbox_events")
    op.drop_index("ix_visit_timeline_visit_id", table_name="visit_timeline")
    op.drop_table("visit_timeline")
    op.drop_index("ix_visits_user_tag_created", table_name="visits")
    op.drop_index("ix_visits_created_at", table_name="visits")
    op.drop_index("ix_visits_status", table_name="visits")
    op.drop_index("ix_visits_fingerprint", table_name="visits")
    op.drop_index("ix_visits_nfc_tag_id", table_name="visits")
    op.drop_index("ix_visits_user_id", table_name="visits")
    op.drop_table("visits")
    op.drop_index("ix_users_wallet_address", table_name="users")
    op.drop_table("users")
