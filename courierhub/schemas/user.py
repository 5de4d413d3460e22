from datetime import datetime

from pydantic import BaseModel, Field

from courierhub.schemas.common import LocationModel


class UserResponse(BaseModel):
    id: str
    username: str | None = None
    first_name: str | None = None
    wallet_balance: float
    rating: float
    rating_count: int
    is_available: bool
    location: LocationModel | None = None
    radius_km: float | None = None
    is_live_location: bool
    conversation_state: str
    conversation_listing_id: str | None = None
    created_at: datetime


class AvailableUserResponse(BaseModel):
    """Public view of a traveler on the map. No wallet or conversation fields."""

    id: str
    username: str | None = None
    first_name: str | None = None
    rating: float
    rating_count: int
    location: LocationModel
    radius_km: float
    is_live_location: bool


class AvailableUserListResponse(BaseModel):
    results: list[AvailableUserResponse]


class ProfileUpdateRequest(BaseModel):
    username: str | None = Field(default=None, max_length=100)
    first_name: str | None = Field(default=None, max_length=100)


class AvailabilityRequest(BaseModel):
    is_available: bool
    location: LocationModel | None = None
    radius_km: float | None = Field(default=None, gt=0, le=20000)
    is_live_location: bool | None = None


class LocationUpdateRequest(BaseModel):
    location: LocationModel


class EventResponse(BaseModel):
    type: str
    user_id: str
    transient: bool
    timestamp: str
    data: dict


class LocationUpdateResponse(BaseModel):
    pushed: list[EventResponse]
