"""Two-sided OTP handoff and final settlement.

The buyer proves the handoff by entering the traveler's code and the traveler
by entering the buyer's code. Once both flags are set the listing settles:
the buyer pays the final half, the traveler is paid, and the listing is
COMPLETED. Settlement is guarded by the MATCHED -> COMPLETED conditional
update, so it runs at most once however many times (T, T) is observed.
"""

import hmac
import logging
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from courierhub.core.conversation import Conversation
from courierhub.core.exceptions import (
    ForbiddenError,
    InsufficientFundsError,
    InvalidInputError,
    InvalidOtpError,
    InvalidStateError,
)
from courierhub.models.listing import Listing, ListingStatus
from courierhub.models.wallet import EntryType
from courierhub.services import bid_service, listing_service, user_service, wallet_service
from courierhub.services.notification_service import Event, EventType, hub

logger = logging.getLogger(__name__)

ROLES = ("buyer", "traveler")


def _counterparty(listing: Listing, role: str) -> str:
    return listing.traveler_id if role == "buyer" else listing.buyer_id


def _expected_code(listing: Listing, role: str) -> str:
    # Cross-checked: each side enters the other side's code.
    return listing.otp_traveler if role == "buyer" else listing.otp_buyer


async def submit_otp(
    db: AsyncSession,
    listing_id: str,
    role: str,
    code: str,
    submitter_id: str | None = None,
) -> dict:
    """Record one side's confirmation and settle when both sides have confirmed.

    Returns:
        dict with keys: listing_id, confirmed, settled.

    Raises:
        InvalidOtpError: wrong code; the listing is unchanged.
        InvalidStateError: the listing is not matched.
        InsufficientFundsError: both sides confirmed but the buyer cannot cover
            the final amount; the listing stays MATCHED with both flags set.
    """
    if role not in ROLES:
        raise InvalidInputError("Role must be 'buyer' or 'traveler'")

    listing = await listing_service.get_listing(db, listing_id)
    await db.refresh(listing)
    if submitter_id is not None and listing.party_role(submitter_id) != role:
        raise ForbiddenError(f"Only the listing's {role} can confirm as {role}")
    if listing.status not in (ListingStatus.MATCHED.value, ListingStatus.COMPLETED.value):
        raise InvalidStateError("This listing is not awaiting delivery confirmation")

    expected = _expected_code(listing, role)
    if not hmac.compare_digest((code or "").strip().encode(), (expected or "").encode()):
        logger.warning("Wrong OTP for listing %s from the %s", listing_id, role)
        raise InvalidOtpError()

    if listing.status == ListingStatus.COMPLETED.value:
        return {"listing_id": listing_id, "confirmed": True, "settled": True}

    flag = "buyer_confirmed" if role == "buyer" else "traveler_confirmed"
    first_time = not getattr(listing, flag)
    if not await listing_service.set_confirmed_flag(db, listing_id, role):
        await db.rollback()
        await db.refresh(listing)
        if listing.status == ListingStatus.COMPLETED.value:
            return {"listing_id": listing_id, "confirmed": True, "settled": True}
        raise InvalidStateError("This listing is not awaiting delivery confirmation")
    await db.commit()
    await db.refresh(listing)
    logger.info("Listing %s confirmed by the %s", listing_id, role)

    if first_time:
        await hub.publish(
            Event(
                EventType.OTP_CONFIRMED_BY_COUNTERPARTY,
                _counterparty(listing, role),
                {"listing_id": listing_id, "confirmed_by": role},
            )
        )

    settled = False
    if listing.buyer_confirmed and listing.traveler_confirmed:
        settled = await settle_listing(db, listing_id)
        if not settled:
            await db.refresh(listing)
            settled = listing.status == ListingStatus.COMPLETED.value
    return {"listing_id": listing_id, "confirmed": True, "settled": settled}


async def settle_listing(db: AsyncSession, listing_id: str) -> bool:
    """Charge the buyer, pay the traveler, and complete the listing.

    Returns False without moving money when the listing is not MATCHED with
    both confirmations, or when another call already settled it.
    """
    listing = await listing_service.get_listing(db, listing_id)
    await db.refresh(listing)
    if listing.status != ListingStatus.MATCHED.value:
        return False
    if not (listing.buyer_confirmed and listing.traveler_confirmed):
        return False

    bid = await bid_service.get_bid(db, listing.accepted_bid_id)
    final = wallet_service.final_amount(listing.item_price, bid.proposed_fee)
    payment = wallet_service.traveler_payment(listing.item_price, bid.proposed_fee)

    won = await listing_service.transition_listing(
        db,
        listing_id,
        ListingStatus.MATCHED,
        status=ListingStatus.COMPLETED.value,
        completed_at=datetime.now(timezone.utc),
    )
    if not won:
        await db.rollback()
        logger.info("Listing %s already settled", listing_id)
        return False

    try:
        await wallet_service.debit(
            db,
            listing.buyer_id,
            final,
            EntryType.SETTLEMENT,
            listing_id=listing_id,
            idempotency_key=f"settle-{listing_id}",
            memo="Final payment on delivery",
        )
        await wallet_service.credit(
            db,
            listing.traveler_id,
            payment,
            EntryType.PAYOUT,
            listing_id=listing_id,
            idempotency_key=f"payout-{listing_id}",
            memo="Delivery payout",
        )
        for user_id in (listing.buyer_id, listing.traveler_id):
            user = await user_service.get_user(db, user_id)
            user_service.set_conversation(user, Conversation.rating(listing_id))
        await db.commit()
    except InsufficientFundsError:
        await db.rollback()
        logger.warning("Listing %s confirmed by both sides but the buyer cannot cover %s", listing_id, final)
        raise
    except Exception:
        await db.rollback()
        raise
    await db.refresh(listing)

    logger.info(
        "Listing %s settled: buyer %s charged %s, traveler %s paid %s",
        listing_id,
        listing.buyer_id,
        final,
        listing.traveler_id,
        payment,
    )
    amounts = {
        "listing_id": listing_id,
        "accepted_fee": bid.proposed_fee,
        "reserved_amount": listing.reserved_amount,
        "final_amount": final,
        "total_buyer_debit": wallet_service.to_money(listing.reserved_amount + final),
        "traveler_payment": payment,
    }
    await hub.publish_all([
        Event(EventType.DELIVERY_COMPLETED, listing.buyer_id, {**amounts, "role": "buyer"}),
        Event(EventType.DELIVERY_COMPLETED, listing.traveler_id, {**amounts, "role": "traveler"}),
    ])
    return True


async def settle_ready_listings_for_buyer(db: AsyncSession, buyer_id: str) -> int:
    """Retry settlement of confirmed listings that stalled on the buyer's balance."""
    result = await db.execute(
        select(Listing.id).where(
            Listing.buyer_id == buyer_id,
            Listing.status == ListingStatus.MATCHED.value,
            Listing.buyer_confirmed.is_(True),
            Listing.traveler_confirmed.is_(True),
        )
    )
    settled = 0
    for listing_id in list(result.scalars().all()):
        try:
            if await settle_listing(db, listing_id):
                settled += 1
        except InsufficientFundsError:
            logger.info("Buyer %s still cannot settle listing %s", buyer_id, listing_id)
    return settled
