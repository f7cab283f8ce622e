"""Request/response schemas for visit endpoints."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class VisitSubmitRequest(BaseModel):
    """Visit capture as sent by the client after an NFC scan + GPS fix."""

    nfc_tag_id: str = Field(min_length=1, max_length=100)
    latitude: float
    longitude: float
    accuracy_meters: float | None = None
    claimed_timestamp: datetime | None = None
    location_name: str | None = Field(default=None, max_length=200)
    description: str | None = Field(default=None, max_length=2000)


class VisitAttempt(VisitSubmitRequest):
    """Admission input: a captured visit bound to the submitting user."""

    user_id: str = Field(min_length=1)


class ExpectedLocation(BaseModel):
    latitude: float
    longitude: float
    radius_meters: float = Field(default=100.0, ge=0)


class VisitPrecheckRequest(BaseModel):
    """Dry-run validation of a capture before submitting it."""

    nfc_tag_id: str = ""
    latitude: float
    longitude: float
    accuracy_meters: float | None = None
    expected_location: ExpectedLocation | None = None
    expected_locations: list[ExpectedLocation] = Field(default_factory=list)


class VisitPrecheckResponse(BaseModel):
    is_valid: bool
    gps: bool
    gps_reason: str | None = None
    accuracy: bool
    proximity: bool
    nfc: bool
    distance_meters: float | None = None
    matched_location: int | None = None


class VisitRejectRequest(BaseModel):
    reason: str = Field(min_length=3)


class VisitResponse(BaseModel):
    """Visit record as exposed to clients."""

    model_config = ConfigDict(from_attributes=True)

    visit_id: str
    user_id: str
    nfc_tag_id: str
    latitude: float
    longitude: float
    accuracy_meters: float | None = None
    location_name: str | None = None
    description: str | None = None
    timestamp: datetime
    fingerprint: str
    content_ref: str | None = None
    status: str
    is_verified: bool
    verified_at: datetime | None = None


class VisitStatsResponse(BaseModel):
    total_visits: int
    verified_visits: int
    unique_locations: int
    recent_visits: int


class TagCenter(BaseModel):
    latitude: float
    longitude: float


class TagVisitsResponse(BaseModel):
    """A page of visits recorded at one NFC tag."""

    nfc_tag_id: str
    total_count: int
    center: TagCenter | None = None
    visits: list[VisitResponse]
