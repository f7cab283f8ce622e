"""Request/response schemas for wallet sign-in."""

from datetime import datetime

from pydantic import BaseModel, Field


class ChallengeRequest(BaseModel):
    wallet_address: str = Field(min_length=42, max_length=42)


class ChallengeResponse(BaseModel):
    """Message the wallet must sign with `personal_sign`."""

    wallet_address: str
    nonce: str
    message: str
    expires_at: datetime


class LoginRequest(BaseModel):
    wallet_address: str = Field(min_length=42, max_length=42)
    nonce: str = Field(min_length=1)
    signature: str = Field(min_length=1)


class LoginResponse(BaseModel):
    user_id: str
    wallet_address: str
    created: bool
