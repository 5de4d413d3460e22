from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from courierhub.core.exceptions import NotFoundError
from courierhub.models.bid import Bid, BidStatus


async def get_bid(db: AsyncSession, bid_id: str, listing_id: str | None = None) -> Bid:
    """Get a bid by ID or raise 404. With ``listing_id``, the bid must belong to it."""
    result = await db.execute(select(Bid).where(Bid.id == bid_id))
    bid = result.scalar_one_or_none()
    if not bid or (listing_id is not None and bid.listing_id != listing_id):
        raise NotFoundError("Bid", bid_id)
    return bid


async def list_bids_for_listing(db: AsyncSession, listing_id: str, traveler_id: str | None = None) -> list[Bid]:
    query = select(Bid).where(Bid.listing_id == listing_id)
    if traveler_id is not None:
        query = query.where(Bid.traveler_id == traveler_id)
    result = await db.execute(query.order_by(Bid.timestamp))
    return list(result.scalars().all())


async def pending_bids_for_listing(db: AsyncSession, listing_id: str) -> list[Bid]:
    result = await db.execute(
        select(Bid).where(Bid.listing_id == listing_id, Bid.status == BidStatus.PENDING.value)
    )
    return list(result.scalars().all())


async def list_bids_for_traveler(db: AsyncSession, traveler_id: str, status: str | None = None) -> list[Bid]:
    query = select(Bid).where(Bid.traveler_id == traveler_id)
    if status:
        query = query.where(Bid.status == status)
    result = await db.execute(query.order_by(Bid.timestamp.desc()))
    return list(result.scalars().all())


async def list_overdue_bids(db: AsyncSession, now: datetime) -> list[Bid]:
    """PENDING bids whose decision deadline has passed."""
    result = await db.execute(
        select(Bid).where(
            Bid.status == BidStatus.PENDING.value,
            Bid.expires_at.is_not(None),
            Bid.expires_at <= now,
        )
    )
    return list(result.scalars().all())


async def transition_bid(
    db: AsyncSession,
    bid_id: str,
    new_status: BidStatus,
    reason: str | None = None,
) -> bool:
    """Move a PENDING bid to ``new_status``. Terminal states never change.

    Returns True when this call performed the write. Does not commit.
    """
    result = await db.execute(
        update(Bid)
        .where(Bid.id == bid_id, Bid.status == BidStatus.PENDING.value)
        .values(
            status=new_status.value,
            decline_reason=reason,
            decided_at=datetime.now(timezone.utc),
        )
    )
    return result.rowcount == 1


async def decline_pending_bids(
    db: AsyncSession,
    listing_id: str,
    reason: str,
    exclude_bid_id: str | None = None,
) -> list[Bid]:
    """Decline every PENDING bid on a listing. Returns the bids this call declined."""
    declined: list[Bid] = []
    for bid in await pending_bids_for_listing(db, listing_id):
        if bid.id == exclude_bid_id:
            continue
        if await transition_bid(db, bid.id, BidStatus.DECLINED, reason):
            declined.append(bid)
    return declined


async def list_bids_for_viewer(db: AsyncSession, listing, viewer_id: str) -> list[Bid]:
    """The buyer sees every bid on their listing; anyone else only their own."""
    if viewer_id == listing.buyer_id:
        return await list_bids_for_listing(db, listing.id)
    return await list_bids_for_listing(db, listing.id, traveler_id=viewer_id)
