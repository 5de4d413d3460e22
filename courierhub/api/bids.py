from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from courierhub.core.auth import get_current_user_id
from courierhub.database import get_db
from courierhub.models.bid import Bid
from courierhub.schemas.bid import BidCreateRequest, BidListResponse, BidResponse, MatchResponse
from courierhub.services import bid_service, listing_service, match_service

router = APIRouter(tags=["bids"])


def _bid_to_response(bid: Bid) -> BidResponse:
    return BidResponse(
        id=bid.id,
        listing_id=bid.listing_id,
        traveler_id=bid.traveler_id,
        proposed_fee=float(bid.proposed_fee),
        status=bid.status,
        is_direct_accept=bid.is_direct_accept,
        decline_reason=bid.decline_reason,
        timestamp=bid.timestamp,
        expires_at=bid.expires_at,
        decided_at=bid.decided_at,
    )


@router.post("/listings/{listing_id}/bids", response_model=BidResponse, status_code=201)
async def submit_bid(
    listing_id: str,
    req: BidCreateRequest,
    db: AsyncSession = Depends(get_db),
    current_user: str = Depends(get_current_user_id),
):
    bid = await match_service.submit_bid(db, listing_id, current_user, req.proposed_fee)
    return _bid_to_response(bid)


@router.get("/listings/{listing_id}/bids", response_model=BidListResponse)
async def list_bids(
    listing_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: str = Depends(get_current_user_id),
):
    listing = await listing_service.get_listing(db, listing_id)
    bids = await bid_service.list_bids_for_viewer(db, listing, current_user)
    return BidListResponse(listing_id=listing_id, results=[_bid_to_response(b) for b in bids])


@router.post("/listings/{listing_id}/bids/{bid_id}/accept", response_model=MatchResponse)
async def accept_bid(
    listing_id: str,
    bid_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: str = Depends(get_current_user_id),
):
    result = await match_service.accept_bid(db, listing_id, bid_id, current_user)
    return MatchResponse(**{**result, "accepted_fee": float(result["accepted_fee"])})


@router.post("/listings/{listing_id}/bids/{bid_id}/decline", response_model=BidResponse)
async def decline_bid(
    listing_id: str,
    bid_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: str = Depends(get_current_user_id),
):
    bid = await match_service.decline_bid(db, listing_id, bid_id, current_user)
    return _bid_to_response(bid)


@router.post("/bids/{bid_id}/withdraw", response_model=BidResponse)
async def withdraw_bid(
    bid_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: str = Depends(get_current_user_id),
):
    bid = await match_service.withdraw_bid(db, bid_id, current_user)
    return _bid_to_response(bid)


@router.get("/bids/mine", response_model=list[BidResponse])
async def my_bids(
    status: str | None = Query(None),
    db: AsyncSession = Depends(get_db),
    current_user: str = Depends(get_current_user_id),
):
    bids = await bid_service.list_bids_for_traveler(db, current_user, status=status)
    return [_bid_to_response(b) for b in bids]
