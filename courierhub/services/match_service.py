"""Matching engine: listing creation, fan-out, bidding, and bid acceptance.

Every transition that must be mutually exclusive (OPEN -> MATCHED, PENDING ->
anything) is a conditional UPDATE keyed on the expected current status; the row
count tells the caller whether it won. Wallet movements paired with a
transition are flushed into the same transaction and committed together.

Events are published only after the commit. Delivery failures are logged by
the hub and never undo the transition.
"""

import logging
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from courierhub.config import settings
from courierhub.core.conversation import Conversation
from courierhub.core.exceptions import (
    FeeTooLowError,
    ForbiddenError,
    InvalidInputError,
    InvalidStateError,
    SelfBidNotAllowedError,
)
from courierhub.core.scheduler import bid_expiry_key, scheduler
from courierhub.database import get_session_factory
from courierhub.models.bid import Bid, BidStatus
from courierhub.models.listing import Listing, ListingStatus
from courierhub.models.notification import ListingNotification
from courierhub.models.wallet import EntryType
from courierhub.services import bid_service, listing_service, user_service, wallet_service
from courierhub.services.notification_service import (
    Event,
    EventType,
    bid_summary,
    hub,
    listing_summary,
)
from courierhub.services.proximity_service import (
    Location,
    listings_within,
    location_of,
    pickup_of,
    travelers_near,
)

logger = logging.getLogger(__name__)

ANOTHER_BID_ACCEPTED = "another bid was accepted"
LISTING_CANCELLED = "listing cancelled by the buyer"
DECLINED_BY_BUYER = "declined by the buyer"
WITHDRAWN_BY_TRAVELER = "withdrawn by the traveler"
NO_RESPONSE = "no response before the deadline"


def generate_otp(length: int | None = None) -> str:
    """Random fixed-length decimal code."""
    n = length or settings.otp_length
    return f"{secrets.randbelow(10 ** n):0{n}d}"


def _not_open_message(listing: Listing) -> str:
    if listing.status in (ListingStatus.MATCHED.value, ListingStatus.COMPLETED.value):
        return "Listing already matched"
    return "This listing is no longer open"


def _ensure_open(listing: Listing) -> None:
    if not listing.is_open:
        raise InvalidStateError(_not_open_message(listing))


# ---------------------------------------------------------------------------
# Listings
# ---------------------------------------------------------------------------

async def create_listing(
    db: AsyncSession,
    buyer_id: str,
    item_description: str,
    item_price: float | Decimal,
    max_fee: float | Decimal,
    pickup: Location | None,
    destination: Location | None,
) -> Listing:
    """Reserve escrow from the buyer and open a listing, then fan out.

    The reserve debit and the listing insert commit together.

    Raises:
        InvalidInputError: missing description or location, non-positive amounts.
        InsufficientFundsError: balance below the reserve.
    """
    if not item_description or not item_description.strip():
        raise InvalidInputError("Item description is required")
    price = wallet_service.to_money(item_price)
    fee = wallet_service.to_money(max_fee)
    if price <= 0:
        raise InvalidInputError("Item price must be greater than 0")
    if fee <= 0:
        raise InvalidInputError("Maximum fee must be greater than 0")
    if pickup is None or destination is None:
        raise InvalidInputError("Both a pickup and a destination location are required")

    await user_service.get_or_create_user(db, buyer_id)
    reserved = wallet_service.reserve_amount(price, fee)

    listing = Listing(
        id=str(uuid.uuid4()),
        buyer_id=buyer_id,
        item_description=item_description.strip(),
        item_price=price,
        max_fee=fee,
        reserved_amount=reserved,
        pickup_latitude=pickup.latitude,
        pickup_longitude=pickup.longitude,
        destination_latitude=destination.latitude,
        destination_longitude=destination.longitude,
        status=ListingStatus.OPEN.value,
    )
    try:
        db.add(listing)
        await db.flush()
        await wallet_service.debit(
            db,
            buyer_id,
            reserved,
            EntryType.RESERVE,
            listing_id=listing.id,
            idempotency_key=f"reserve-{listing.id}",
            memo=f"Escrow for {listing.item_description[:60]}",
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    await db.refresh(listing)

    logger.info(
        "Listing %s opened by %s: price=%s max_fee=%s reserved=%s",
        listing.id,
        buyer_id,
        price,
        fee,
        reserved,
    )

    try:
        await notify_nearby_travelers(db, listing)
    except Exception:
        logger.exception("Fan-out failed for listing %s", listing.id)
    return listing


async def notify_nearby_travelers(db: AsyncSession, listing: Listing, channel: str = "fanout") -> list[Event]:
    """Prompt every available traveler whose radius covers the pickup.

    Users already told about this listing, and the buyer, are skipped.
    """
    if not listing.is_open:
        return []

    listing_id = listing.id
    summary = listing_summary(listing)
    pickup = pickup_of(listing)

    already = set(
        (
            await db.execute(
                select(ListingNotification.user_id).where(ListingNotification.listing_id == listing_id)
            )
        ).scalars().all()
    )
    candidates = [
        u for u in await user_service.list_available_users(db)
        if u.id != listing.buyer_id and u.id not in already
    ]
    targets = [(user.id, distance) for user, distance in travelers_near(candidates, pickup)]
    if not targets:
        return []

    for user_id, _ in targets:
        user_service.record_notified(db, user_id, listing_id, channel)
    try:
        await db.commit()
    except IntegrityError:
        # A concurrent sweep notified some of these users first.
        await db.rollback()
        logger.warning("Fan-out for listing %s lost a race, skipping this round", listing_id)
        return []

    events = [
        Event(
            EventType.NEW_LISTING_NEARBY,
            user_id,
            {**summary, "distance_km": round(distance, 2), "actions": ["bid", "accept", "decline"]},
        )
        for user_id, distance in targets
    ]
    await hub.publish_all(events)
    logger.info("Listing %s fanned out to %d travelers via %s", listing_id, len(events), channel)
    return events


async def cancel_listing(db: AsyncSession, listing_id: str, requester_id: str) -> Listing:
    """Buyer cancels an OPEN listing: refund the reserve and decline pending bids."""
    listing = await listing_service.get_listing(db, listing_id)
    if listing.buyer_id != requester_id:
        raise ForbiddenError("Only the buyer can cancel this listing")
    _ensure_open(listing)

    now = datetime.now(timezone.utc)
    won = await listing_service.transition_listing(
        db, listing_id, ListingStatus.OPEN, status=ListingStatus.CANCELLED.value, cancelled_at=now
    )
    if not won:
        await db.rollback()
        logger.warning("Cancel of listing %s lost a race", listing_id)
        raise InvalidStateError("This listing is no longer open")

    try:
        await wallet_service.credit(
            db,
            listing.buyer_id,
            listing.reserved_amount,
            EntryType.REFUND,
            listing_id=listing_id,
            idempotency_key=f"refund-{listing_id}",
            memo="Escrow refund for cancelled listing",
        )
        declined = await bid_service.decline_pending_bids(db, listing_id, LISTING_CANCELLED)
        await user_service.leave_bidding(db, [bid.traveler_id for bid in declined], listing_id)
        buyer = await user_service.get_user(db, listing.buyer_id)
        if buyer.conversation.refers_to(listing_id):
            user_service.set_conversation(buyer, Conversation.idle())
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    await db.refresh(listing)

    for bid in declined:
        scheduler.cancel(bid_expiry_key(bid.id))
    logger.info("Listing %s cancelled, refunded %s, declined %d bids", listing_id, listing.reserved_amount, len(declined))

    events = [
        Event(EventType.LISTING_CANCELLED, listing.buyer_id, {"listing_id": listing_id, "refunded": listing.reserved_amount})
    ]
    events += [
        Event(EventType.BID_DECLINED, bid.traveler_id, {**bid_summary(bid), "reason": LISTING_CANCELLED})
        for bid in declined
    ]
    await hub.publish_all(events)
    return listing


# ---------------------------------------------------------------------------
# Bids
# ---------------------------------------------------------------------------

async def _expire_bid_job(bid_id: str) -> None:
    async with get_session_factory()() as db:
        await expire_bid(db, bid_id)


async def submit_bid(
    db: AsyncSession,
    listing_id: str,
    traveler_id: str,
    proposed_fee: float | Decimal,
) -> Bid:
    """Place a PENDING bid and start the buyer's decision timer."""
    listing = await listing_service.get_listing(db, listing_id)
    _ensure_open(listing)
    if traveler_id == listing.buyer_id:
        raise SelfBidNotAllowedError()
    fee = wallet_service.to_money(proposed_fee)
    if fee < wallet_service.to_money(listing.max_fee):
        raise FeeTooLowError(wallet_service.to_money(listing.max_fee))

    await user_service.get_or_create_user(db, traveler_id)
    now = datetime.now(timezone.utc)
    bid = Bid(
        id=str(uuid.uuid4()),
        listing_id=listing_id,
        traveler_id=traveler_id,
        proposed_fee=fee,
        status=BidStatus.PENDING.value,
        timestamp=now,
        expires_at=now + timedelta(seconds=settings.bid_expiry_seconds),
    )
    db.add(bid)
    await user_service.enter_bidding(db, traveler_id, listing_id)
    await db.commit()
    await db.refresh(bid)

    bid_id = bid.id
    scheduler.schedule(
        bid_expiry_key(bid_id),
        settings.bid_expiry_seconds,
        lambda: _expire_bid_job(bid_id),
    )
    logger.info("Bid %s on listing %s by %s: fee=%s", bid.id, listing_id, traveler_id, fee)

    await hub.publish(
        Event(
            EventType.BID_RECEIVED,
            listing.buyer_id,
            {
                **bid_summary(bid),
                "item_description": listing.item_description,
                "expires_in_seconds": settings.bid_expiry_seconds,
            },
        )
    )
    return bid


async def _match(db: AsyncSession, listing: Listing, bid: Bid) -> dict:
    """OPEN -> MATCHED and PENDING -> ACCEPTED as one transaction.

    Must be called with the bid already inserted (or flushed) in ``db``.
    """
    listing_id = listing.id
    otp_buyer = generate_otp()
    otp_traveler = generate_otp()

    won = await listing_service.transition_listing(
        db,
        listing_id,
        ListingStatus.OPEN,
        status=ListingStatus.MATCHED.value,
        accepted_bid_id=bid.id,
        traveler_id=bid.traveler_id,
        otp_buyer=otp_buyer,
        otp_traveler=otp_traveler,
        matched_at=datetime.now(timezone.utc),
    )
    if not won:
        await db.rollback()
        logger.warning("Accept of bid %s lost the race for listing %s", bid.id, listing_id)
        await db.refresh(listing)
        raise InvalidStateError(_not_open_message(listing))

    if not await bid_service.transition_bid(db, bid.id, BidStatus.ACCEPTED):
        await db.rollback()
        logger.warning("Bid %s was decided before it could be accepted", bid.id)
        raise InvalidStateError("This bid was already decided")

    try:
        declined = await bid_service.decline_pending_bids(
            db, listing_id, ANOTHER_BID_ACCEPTED, exclude_bid_id=bid.id
        )
        await user_service.leave_bidding(db, [other.traveler_id for other in declined], listing_id)
        buyer = await user_service.get_user(db, listing.buyer_id)
        traveler = await user_service.get_user(db, bid.traveler_id)
        user_service.set_conversation(buyer, Conversation.confirming(listing_id))
        user_service.set_conversation(traveler, Conversation.confirming(listing_id))
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    await db.refresh(listing)
    await db.refresh(bid)

    scheduler.cancel(bid_expiry_key(bid.id))
    for other in declined:
        scheduler.cancel(bid_expiry_key(other.id))

    logger.info(
        "Listing %s matched with traveler %s at fee %s (declined %d other bids)",
        listing_id,
        bid.traveler_id,
        bid.proposed_fee,
        len(declined),
    )

    summary = {**listing_summary(listing), "accepted_fee": bid.proposed_fee}
    events = [
        Event(EventType.BID_ACCEPTED, bid.traveler_id, bid_summary(bid)),
        Event(EventType.DELIVERY_MATCHED, listing.buyer_id, {**summary, "role": "buyer", "otp": otp_buyer}),
        Event(EventType.DELIVERY_MATCHED, bid.traveler_id, {**summary, "role": "traveler", "otp": otp_traveler}),
    ]
    events += [
        Event(EventType.BID_DECLINED, other.traveler_id, {**bid_summary(other), "reason": ANOTHER_BID_ACCEPTED})
        for other in declined
    ]
    await hub.publish_all(events)

    return {
        "listing_id": listing_id,
        "bid_id": bid.id,
        "traveler_id": bid.traveler_id,
        "accepted_fee": bid.proposed_fee,
        "otp_buyer": otp_buyer,
        "otp_traveler": otp_traveler,
    }


async def accept_bid(db: AsyncSession, listing_id: str, bid_id: str, acceptor_id: str) -> dict:
    """Buyer accepts a PENDING bid. Returns the OTP pair.

    Raises:
        ForbiddenError: the acceptor is not the listing's buyer.
        InvalidStateError: the listing is not OPEN or the bid is not PENDING,
            including when a concurrent accept or the expiry timer won.
    """
    listing = await listing_service.get_listing(db, listing_id)
    bid = await bid_service.get_bid(db, bid_id, listing_id=listing_id)
    if acceptor_id != listing.buyer_id:
        raise ForbiddenError("Only the buyer can accept bids on this listing")
    _ensure_open(listing)
    if not bid.is_pending:
        raise InvalidStateError(f"This bid was already {bid.status}")
    return await _match(db, listing, bid)


async def direct_accept(db: AsyncSession, listing_id: str, traveler_id: str) -> dict:
    """Traveler takes the listing at its max fee. No decision timer is started."""
    listing = await listing_service.get_listing(db, listing_id)
    _ensure_open(listing)
    if traveler_id == listing.buyer_id:
        raise SelfBidNotAllowedError()

    await user_service.get_or_create_user(db, traveler_id)
    bid = Bid(
        id=str(uuid.uuid4()),
        listing_id=listing_id,
        traveler_id=traveler_id,
        proposed_fee=wallet_service.to_money(listing.max_fee),
        status=BidStatus.PENDING.value,
        is_direct_accept=True,
        timestamp=datetime.now(timezone.utc),
    )
    db.add(bid)
    await db.flush()
    logger.info("Direct accept of listing %s by %s", listing_id, traveler_id)
    return await _match(db, listing, bid)


async def decline_bid(db: AsyncSession, listing_id: str, bid_id: str, decliner_id: str) -> Bid:
    listing = await listing_service.get_listing(db, listing_id)
    bid = await bid_service.get_bid(db, bid_id, listing_id=listing_id)
    if decliner_id != listing.buyer_id:
        raise ForbiddenError("Only the buyer can decline bids on this listing")
    if not bid.is_pending:
        raise InvalidStateError(f"This bid was already {bid.status}")

    if not await bid_service.transition_bid(db, bid_id, BidStatus.DECLINED, DECLINED_BY_BUYER):
        await db.rollback()
        raise InvalidStateError("This bid was already decided")
    await user_service.leave_bidding(db, [bid.traveler_id], listing_id)
    await db.commit()
    await db.refresh(bid)
    scheduler.cancel(bid_expiry_key(bid_id))
    logger.info("Bid %s declined by buyer %s", bid_id, decliner_id)

    await hub.publish(Event(EventType.BID_DECLINED, bid.traveler_id, {**bid_summary(bid), "reason": DECLINED_BY_BUYER}))
    return bid


async def withdraw_bid(db: AsyncSession, bid_id: str, traveler_id: str) -> Bid:
    bid = await bid_service.get_bid(db, bid_id)
    if bid.traveler_id != traveler_id:
        raise ForbiddenError("Only the traveler who placed this bid can withdraw it")
    listing = await listing_service.get_listing(db, bid.listing_id)
    _ensure_open(listing)
    if not bid.is_pending:
        raise InvalidStateError(f"This bid was already {bid.status}")

    if not await bid_service.transition_bid(db, bid_id, BidStatus.DECLINED, WITHDRAWN_BY_TRAVELER):
        await db.rollback()
        raise InvalidStateError("This bid was already decided")
    await user_service.leave_bidding(db, [traveler_id], bid.listing_id)
    await db.commit()
    await db.refresh(bid)
    scheduler.cancel(bid_expiry_key(bid_id))
    logger.info("Bid %s withdrawn by traveler %s", bid_id, traveler_id)

    await hub.publish(Event(EventType.BID_WITHDRAWN, listing.buyer_id, bid_summary(bid)))
    return bid


async def expire_bid(db: AsyncSession, bid_id: str) -> Bid | None:
    """PENDING -> EXPIRED. Returns None when the bid was already decided."""
    if not await bid_service.transition_bid(db, bid_id, BidStatus.EXPIRED, NO_RESPONSE):
        await db.rollback()
        logger.info("Bid %s already decided, expiry is a no-op", bid_id)
        return None
    bid = await bid_service.get_bid(db, bid_id)
    await user_service.leave_bidding(db, [bid.traveler_id], bid.listing_id)
    await db.commit()
    await db.refresh(bid)
    listing = await listing_service.get_listing(db, bid.listing_id)
    logger.info("Bid %s on listing %s expired", bid_id, bid.listing_id)

    data = {**bid_summary(bid), "item_description": listing.item_description}
    await hub.publish_all([
        Event(EventType.BID_EXPIRED, bid.traveler_id, data),
        Event(EventType.BID_EXPIRED, listing.buyer_id, data),
    ])
    return bid


async def expire_overdue_bids(db: AsyncSession, now: datetime | None = None) -> int:
    """Expire PENDING bids past their deadline whose timer never fired."""
    now = now or datetime.now(timezone.utc)
    bid_ids = [bid.id for bid in await bid_service.list_overdue_bids(db, now)]
    expired = 0
    for bid_id in bid_ids:
        try:
            if await expire_bid(db, bid_id) is not None:
                expired += 1
        except Exception:
            await db.rollback()
            logger.exception("Failed to expire overdue bid %s", bid_id)
    if expired:
        logger.info("Expired %d overdue bids", expired)
    return expired


# ---------------------------------------------------------------------------
# Browsing
# ---------------------------------------------------------------------------

async def find_nearby_listings(
    db: AsyncSession,
    user_id: str,
    location: Location | None = None,
    radius_km: float | None = None,
) -> list[tuple[Listing, float]]:
    """OPEN listings near the caller (or ``location``), nearest first."""
    if radius_km is not None and radius_km <= 0:
        raise InvalidInputError("Radius must be a positive number of kilometers")

    user = await user_service.get_or_create_user(db, user_id)
    origin = location or location_of(user)
    if origin is None:
        raise InvalidInputError("Share your location first to see nearby listings")
    if radius_km is None:
        if location is None and user.radius_km:
            radius_km = user.radius_km
        else:
            radius_km = settings.nearby_default_radius_km

    listings = await listing_service.list_open_listings(db, exclude_buyer_id=user_id)
    return listings_within(listings, origin, radius_km)[: settings.nearby_results_limit]
