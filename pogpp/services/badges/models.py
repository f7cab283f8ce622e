"""Badge claim database models.

`(user_id, badge_category_id)` and `visit_id` are unique: the local half of
the one-claim-per-pair rule. A `pending` row is a mint reservation held while
the ledger call is in flight or its outcome is unknown.
"""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import DateTime, ForeignKey, Integer, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from pogpp.common.db import Base, JsonDocument
from pogpp.services.visits.models import Visit  # noqa: F401  (users and visits tables for the FKs)


class BadgeClaim(Base):
    """Local record of a badge mint, healed from the ledger on conflict."""

    __tablename__ = "badge_claims"
    __table_args__ = (UniqueConstraint("user_id", "badge_category_id", name="uq_badge_claim_user_category"),)

    claim_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    user_id: Mapped[str] = mapped_column(ForeignKey("users.user_id"), index=True)
    visit_id: Mapped[str] = mapped_column(ForeignKey("visits.visit_id"), unique=True, index=True)
    badge_category_id: Mapped[int] = mapped_column(Integer, index=True)
    wallet_address: Mapped[str] = mapped_column(String(42))
    status: Mapped[str] = mapped_column(String, index=True, default="pending")
    token_id: Mapped[str | None] = mapped_column(String, nullable=True)
    contract_ref: Mapped[str | None] = mapped_column(String(42), nullable=True)
    tx_ref: Mapped[str | None] = mapped_column(String(66), nullable=True)
    metadata_ref: Mapped[str | None] = mapped_column(String(100), nullable=True)
    minted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class BadgeOutboxEvent(Base):
    """Badge events waiting to be published to Kafka."""

    __tablename__ = "badge_outbox_events"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    aggregate_type: Mapped[str] = mapped_column(String)
    aggregate_id: Mapped[str] = mapped_column(String, index=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    topic: Mapped[str] = mapped_column(String)
    payload: Mapped[dict] = mapped_column(JsonDocument)
    status: Mapped[str] = mapped_column(String, default="PENDING", index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
