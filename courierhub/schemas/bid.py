from datetime import datetime

from pydantic import BaseModel, Field


class BidCreateRequest(BaseModel):
    proposed_fee: float = Field(..., gt=0)


class BidResponse(BaseModel):
    id: str
    listing_id: str
    traveler_id: str
    proposed_fee: float
    status: str
    is_direct_accept: bool
    decline_reason: str | None = None
    timestamp: datetime
    expires_at: datetime | None = None
    decided_at: datetime | None = None


class BidListResponse(BaseModel):
    listing_id: str
    results: list[BidResponse]


class MatchResponse(BaseModel):
    """Returned once a bid is accepted. Each party hands their own code to the other."""

    listing_id: str
    bid_id: str
    traveler_id: str
    accepted_fee: float
    otp_buyer: str
    otp_traveler: str


class OtpSubmitRequest(BaseModel):
    role: str = Field(..., pattern="^(buyer|traveler)$")
    code: str = Field(..., min_length=1, max_length=12)


class OtpSubmitResponse(BaseModel):
    listing_id: str
    confirmed: bool
    settled: bool


class RatingRequest(BaseModel):
    rating: int = Field(..., ge=0, le=5)
    comment: str | None = Field(default=None, max_length=1000)


class ReviewResponse(BaseModel):
    id: str
    listing_id: str
    rater_id: str
    target_id: str
    rating: int
    comment: str | None = None
    created_at: datetime
