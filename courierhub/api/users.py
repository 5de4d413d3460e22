from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from courierhub.core.auth import get_current_user_id
from courierhub.database import get_db
from courierhub.models.user import User
from courierhub.schemas.bid import ReviewResponse
from courierhub.schemas.common import LocationModel
from courierhub.schemas.user import (
    AvailabilityRequest,
    AvailableUserListResponse,
    AvailableUserResponse,
    EventResponse,
    LocationUpdateRequest,
    LocationUpdateResponse,
    ProfileUpdateRequest,
    UserResponse,
)
from courierhub.services import location_service, rating_service, user_service

router = APIRouter(prefix="/users", tags=["users"])


def _user_to_response(user: User) -> UserResponse:
    location = None
    if user.has_location:
        location = LocationModel(latitude=user.latitude, longitude=user.longitude)
    return UserResponse(
        id=user.id,
        username=user.username,
        first_name=user.first_name,
        wallet_balance=float(user.wallet_balance),
        rating=float(user.rating),
        rating_count=user.rating_count,
        is_available=user.is_available,
        location=location,
        radius_km=user.radius_km,
        is_live_location=user.is_live_location,
        conversation_state=user.conversation_state,
        conversation_listing_id=user.conversation_listing_id,
        created_at=user.created_at,
    )


@router.get("/me", response_model=UserResponse)
async def get_me(
    db: AsyncSession = Depends(get_db),
    current_user: str = Depends(get_current_user_id),
):
    user = await user_service.get_or_create_user(db, current_user)
    return _user_to_response(user)


@router.put("/me", response_model=UserResponse)
async def update_me(
    req: ProfileUpdateRequest,
    db: AsyncSession = Depends(get_db),
    current_user: str = Depends(get_current_user_id),
):
    user = await user_service.get_or_create_user(
        db, current_user, username=req.username, first_name=req.first_name
    )
    return _user_to_response(user)


@router.put("/me/availability", response_model=UserResponse)
async def set_availability(
    req: AvailabilityRequest,
    db: AsyncSession = Depends(get_db),
    current_user: str = Depends(get_current_user_id),
):
    user = await location_service.update_availability(
        db,
        current_user,
        req.is_available,
        location=req.location.to_location() if req.location else None,
        radius_km=req.radius_km,
        is_live_location=req.is_live_location,
    )
    return _user_to_response(user)


@router.post("/me/location", response_model=LocationUpdateResponse)
async def push_location(
    req: LocationUpdateRequest,
    db: AsyncSession = Depends(get_db),
    current_user: str = Depends(get_current_user_id),
):
    events = await location_service.push_location_update(db, current_user, req.location.to_location())
    return LocationUpdateResponse(pushed=[EventResponse(**event.to_dict()) for event in events])


@router.delete("/me/live-location", response_model=UserResponse)
async def stop_live_location(
    db: AsyncSession = Depends(get_db),
    current_user: str = Depends(get_current_user_id),
):
    await user_service.get_or_create_user(db, current_user)
    user = await location_service.stop_live_location(db, current_user)
    return _user_to_response(user)


@router.get("/available", response_model=AvailableUserListResponse)
async def list_available(
    db: AsyncSession = Depends(get_db),
    current_user: str = Depends(get_current_user_id),
):
    users = await user_service.list_available_users(db)
    return AvailableUserListResponse(
        results=[
            AvailableUserResponse(
                id=user.id,
                username=user.username,
                first_name=user.first_name,
                rating=float(user.rating),
                rating_count=user.rating_count,
                location=LocationModel(latitude=user.latitude, longitude=user.longitude),
                radius_km=user.radius_km,
                is_live_location=user.is_live_location,
            )
            for user in users
        ]
    )


@router.get("/{user_id}", response_model=UserResponse)
async def get_profile(user_id: str, db: AsyncSession = Depends(get_db)):
    user = await user_service.get_user(db, user_id)
    return _user_to_response(user)


@router.get("/{user_id}/reviews", response_model=list[ReviewResponse])
async def list_reviews(
    user_id: str,
    limit: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
):
    await user_service.get_user(db, user_id)
    reviews = await rating_service.list_reviews_for_user(db, user_id, limit)
    return [ReviewResponse.model_validate(r, from_attributes=True) for r in reviews]
