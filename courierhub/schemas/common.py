from pydantic import BaseModel, Field

from courierhub.services.proximity_service import Location


class PaginatedResponse(BaseModel):
    total: int
    page: int
    page_size: int


class HealthResponse(BaseModel):
    status: str
    version: str
    users_count: int
    open_listings_count: int
    scheduled_jobs: int
    tracked_travelers: int


class LocationModel(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)

    def to_location(self) -> Location:
        return Location(self.latitude, self.longitude)
