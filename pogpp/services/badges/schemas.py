"""Request/response schemas for badge endpoints."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class BadgeClaimRequest(BaseModel):
    visit_id: str = Field(min_length=1)


class BadgeClaimResponse(BaseModel):
    """Badge claim as exposed to clients; `pending` means the mint is unresolved."""

    model_config = ConfigDict(from_attributes=True)

    claim_id: str
    user_id: str
    visit_id: str
    badge_category_id: int
    wallet_address: str
    status: str
    token_id: str | None = None
    contract_ref: str | None = None
    tx_ref: str | None = None
    metadata_ref: str | None = None
    minted_at: datetime | None = None


class BadgeVerifyResponse(BaseModel):
    claim_id: str
    token_id: str | None = None
    owner: str | None = None
    is_owner: bool


class ReconcileRequest(BaseModel):
    limit: int = Field(default=100, ge=1, le=1000)


class ReconcileResponse(BaseModel):
    examined: int
    minted: int
    released: int
    skipped: int


class LeaderboardEntry(BaseModel):
    rank: int
    user_id: str
    wallet_address: str
    badge_count: int


class CollectionStatsResponse(BaseModel):
    total_badges: int
    unique_holders: int
    badge_categories: int
    recent_badges: int
