from decimal import Decimal, ROUND_HALF_UP

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from courierhub.core.conversation import Conversation
from courierhub.core.exceptions import ForbiddenError, InvalidInputError, InvalidStateError
from courierhub.models.listing import ListingStatus
from courierhub.models.review import Review
from courierhub.services import listing_service, user_service


async def submit_rating(
    db: AsyncSession,
    listing_id: str,
    rater_id: str,
    rating: int,
    comment: str | None = None,
) -> Review:
    """Rate the other party of a completed delivery.

    The target's rating becomes the mean of every review they have ever received.
    """
    if isinstance(rating, bool) or not isinstance(rating, int) or not 0 <= rating <= 5:
        raise InvalidInputError("Rating must be a whole number from 0 to 5")

    listing = await listing_service.get_listing(db, listing_id)
    role = listing.party_role(rater_id)
    if role is None:
        raise ForbiddenError("Only the buyer or traveler of this delivery can rate it")
    if listing.status != ListingStatus.COMPLETED.value:
        raise InvalidStateError("You can only rate a completed delivery")

    existing = await db.execute(
        select(Review.id).where(Review.listing_id == listing_id, Review.rater_id == rater_id)
    )
    if existing.scalar_one_or_none() is not None:
        raise InvalidStateError("You have already rated this delivery")

    target_id = listing.traveler_id if role == "buyer" else listing.buyer_id
    review = Review(
        listing_id=listing_id,
        rater_id=rater_id,
        target_id=target_id,
        rating=rating,
        comment=comment,
    )
    db.add(review)
    try:
        await db.flush()
    except IntegrityError:
        await db.rollback()
        raise InvalidStateError("You have already rated this delivery")

    row = (
        await db.execute(
            select(func.avg(Review.rating), func.count(Review.id)).where(Review.target_id == target_id)
        )
    ).one()
    target = await user_service.get_user(db, target_id)
    target.rating = Decimal(str(row[0])).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    target.rating_count = row[1]

    rater = await user_service.get_user(db, rater_id)
    if rater.conversation.refers_to(listing_id):
        user_service.set_conversation(rater, Conversation.idle())

    await db.commit()
    await db.refresh(review)
    return review


async def list_reviews_for_user(db: AsyncSession, user_id: str, limit: int = 20) -> list[Review]:
    """Reviews received by a user, newest first."""
    result = await db.execute(
        select(Review)
        .where(Review.target_id == user_id)
        .order_by(Review.created_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())
