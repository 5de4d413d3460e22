from datetime import datetime, timezone

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from courierhub.core.exceptions import NotFoundError
from courierhub.models.listing import Listing, ListingStatus


async def get_listing(db: AsyncSession, listing_id: str) -> Listing:
    """Get a listing by ID or raise 404."""
    result = await db.execute(select(Listing).where(Listing.id == listing_id))
    listing = result.scalar_one_or_none()
    if not listing:
        raise NotFoundError("Listing", listing_id)
    return listing


async def list_open_listings(db: AsyncSession, exclude_buyer_id: str | None = None) -> list[Listing]:
    query = select(Listing).where(Listing.status == ListingStatus.OPEN.value)
    if exclude_buyer_id is not None:
        query = query.where(Listing.buyer_id != exclude_buyer_id)
    result = await db.execute(query.order_by(Listing.created_at))
    return list(result.scalars().all())


async def list_listings_for_user(
    db: AsyncSession,
    user_id: str,
    role: str | None = None,
    status: str | None = None,
) -> list[Listing]:
    """Listings where the user is the buyer and/or the matched traveler, newest first."""
    if role == "buyer":
        query = select(Listing).where(Listing.buyer_id == user_id)
    elif role == "traveler":
        query = select(Listing).where(Listing.traveler_id == user_id)
    else:
        query = select(Listing).where(or_(Listing.buyer_id == user_id, Listing.traveler_id == user_id))
    if status:
        query = query.where(Listing.status == status)
    result = await db.execute(query.order_by(Listing.created_at.desc()))
    return list(result.scalars().all())


async def transition_listing(
    db: AsyncSession,
    listing_id: str,
    expected: ListingStatus,
    **values,
) -> bool:
    """Conditionally update a listing that is still in ``expected`` status.

    Returns True when this call performed the write. A False return means
    another transition got there first; nothing was changed. Does not commit.
    """
    values.setdefault("updated_at", datetime.now(timezone.utc))
    result = await db.execute(
        update(Listing)
        .where(Listing.id == listing_id, Listing.status == expected.value)
        .values(**values)
    )
    return result.rowcount == 1


async def set_confirmed_flag(db: AsyncSession, listing_id: str, role: str) -> bool:
    """Set ``buyer_confirmed``/``traveler_confirmed`` on a MATCHED listing. Does not commit."""
    column = "buyer_confirmed" if role == "buyer" else "traveler_confirmed"
    return await transition_listing(db, listing_id, ListingStatus.MATCHED, **{column: True})
