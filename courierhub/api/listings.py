from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from courierhub.core.auth import get_current_user_id
from courierhub.database import get_db
from courierhub.models.listing import Listing
from courierhub.schemas.bid import (
    MatchResponse,
    OtpSubmitRequest,
    OtpSubmitResponse,
    RatingRequest,
    ReviewResponse,
)
from courierhub.schemas.common import LocationModel
from courierhub.schemas.listing import (
    ListingCreateRequest,
    ListingListResponse,
    ListingResponse,
    NearbyListingResponse,
    NearbyListResponse,
)
from courierhub.services import confirmation_service, listing_service, match_service, rating_service
from courierhub.services.proximity_service import Location

router = APIRouter(prefix="/listings", tags=["listings"])


def _listing_to_response(listing: Listing) -> ListingResponse:
    return ListingResponse(
        id=listing.id,
        buyer_id=listing.buyer_id,
        item_description=listing.item_description,
        item_price=float(listing.item_price),
        max_fee=float(listing.max_fee),
        reserved_amount=float(listing.reserved_amount),
        pickup=LocationModel(latitude=listing.pickup_latitude, longitude=listing.pickup_longitude),
        destination=LocationModel(
            latitude=listing.destination_latitude, longitude=listing.destination_longitude
        ),
        status=listing.status,
        accepted_bid_id=listing.accepted_bid_id,
        traveler_id=listing.traveler_id,
        buyer_confirmed=listing.buyer_confirmed,
        traveler_confirmed=listing.traveler_confirmed,
        created_at=listing.created_at,
        matched_at=listing.matched_at,
        completed_at=listing.completed_at,
        cancelled_at=listing.cancelled_at,
    )


@router.post("", response_model=ListingResponse, status_code=201)
async def create_listing(
    req: ListingCreateRequest,
    db: AsyncSession = Depends(get_db),
    current_user: str = Depends(get_current_user_id),
):
    listing = await match_service.create_listing(
        db,
        current_user,
        req.item_description,
        req.item_price,
        req.max_fee,
        req.pickup.to_location() if req.pickup else None,
        req.destination.to_location() if req.destination else None,
    )
    return _listing_to_response(listing)


@router.get("/nearby", response_model=NearbyListResponse)
async def nearby_listings(
    latitude: float | None = Query(None, ge=-90, le=90),
    longitude: float | None = Query(None, ge=-180, le=180),
    radius_km: float | None = Query(None, gt=0),
    db: AsyncSession = Depends(get_db),
    current_user: str = Depends(get_current_user_id),
):
    location = None
    if latitude is not None and longitude is not None:
        location = Location(latitude, longitude)
    hits = await match_service.find_nearby_listings(db, current_user, location, radius_km)
    return NearbyListResponse(
        results=[
            NearbyListingResponse(listing=_listing_to_response(listing), distance_km=round(distance, 2))
            for listing, distance in hits
        ]
    )


@router.get("/mine", response_model=ListingListResponse)
async def my_listings(
    role: str | None = Query(None, pattern="^(buyer|traveler)$"),
    status: str | None = Query(None),
    db: AsyncSession = Depends(get_db),
    current_user: str = Depends(get_current_user_id),
):
    listings = await listing_service.list_listings_for_user(db, current_user, role=role, status=status)
    return ListingListResponse(
        total=len(listings),
        page=1,
        page_size=len(listings),
        results=[_listing_to_response(listing) for listing in listings],
    )


@router.get("/{listing_id}", response_model=ListingResponse)
async def get_listing(listing_id: str, db: AsyncSession = Depends(get_db)):
    listing = await listing_service.get_listing(db, listing_id)
    return _listing_to_response(listing)


@router.post("/{listing_id}/cancel", response_model=ListingResponse)
async def cancel_listing(
    listing_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: str = Depends(get_current_user_id),
):
    listing = await match_service.cancel_listing(db, listing_id, current_user)
    return _listing_to_response(listing)


@router.post("/{listing_id}/accept", response_model=MatchResponse)
async def direct_accept(
    listing_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: str = Depends(get_current_user_id),
):
    """Traveler takes the listing at its max fee."""
    result = await match_service.direct_accept(db, listing_id, current_user)
    return MatchResponse(**{**result, "accepted_fee": float(result["accepted_fee"])})


@router.post("/{listing_id}/otp", response_model=OtpSubmitResponse)
async def submit_otp(
    listing_id: str,
    req: OtpSubmitRequest,
    db: AsyncSession = Depends(get_db),
    current_user: str = Depends(get_current_user_id),
):
    result = await confirmation_service.submit_otp(
        db, listing_id, req.role, req.code, submitter_id=current_user
    )
    return OtpSubmitResponse(**result)


@router.post("/{listing_id}/rating", response_model=ReviewResponse, status_code=201)
async def rate_delivery(
    listing_id: str,
    req: RatingRequest,
    db: AsyncSession = Depends(get_db),
    current_user: str = Depends(get_current_user_id),
):
    review = await rating_service.submit_rating(db, listing_id, current_user, req.rating, req.comment)
    return ReviewResponse.model_validate(review, from_attributes=True)
