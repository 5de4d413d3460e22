from datetime import datetime

from pydantic import BaseModel, Field

from courierhub.schemas.common import LocationModel, PaginatedResponse


class ListingCreateRequest(BaseModel):
    item_description: str = Field(..., min_length=1, max_length=1000)
    item_price: float = Field(..., gt=0)
    max_fee: float = Field(..., gt=0)
    pickup: LocationModel | None = None
    destination: LocationModel | None = None


class ListingResponse(BaseModel):
    id: str
    buyer_id: str
    item_description: str
    item_price: float
    max_fee: float
    reserved_amount: float
    pickup: LocationModel
    destination: LocationModel
    status: str
    accepted_bid_id: str | None = None
    traveler_id: str | None = None
    buyer_confirmed: bool
    traveler_confirmed: bool
    created_at: datetime
    matched_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None


class NearbyListingResponse(BaseModel):
    listing: ListingResponse
    distance_km: float


class ListingListResponse(PaginatedResponse):
    results: list[ListingResponse]


class NearbyListResponse(BaseModel):
    results: list[NearbyListingResponse]
