import logging
from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from courierhub.core.conversation import Conversation, ConversationState
from courierhub.core.exceptions import InvalidInputError, NotFoundError
from courierhub.models.notification import ListingNotification
from courierhub.models.user import User
from courierhub.services.proximity_service import Location

logger = logging.getLogger(__name__)


async def get_user(db: AsyncSession, user_id: str) -> User:
    """Get a user by id or raise 404."""
    user = await db.get(User, user_id)
    if user is None:
        raise NotFoundError("User", user_id)
    return user


async def get_or_create_user(
    db: AsyncSession,
    user_id: str,
    username: str | None = None,
    first_name: str | None = None,
) -> User:
    """Users are created on first interaction."""
    user = await db.get(User, user_id)
    if user is not None:
        changed = False
        if username and user.username != username:
            user.username = username
            changed = True
        if first_name and user.first_name != first_name:
            user.first_name = first_name
            changed = True
        if changed:
            await db.commit()
        return user

    user = User(id=user_id, username=username, first_name=first_name)
    db.add(user)
    try:
        await db.commit()
    except IntegrityError:
        # Another request created the same user first.
        await db.rollback()
        return await get_user(db, user_id)
    await db.refresh(user)
    logger.info("Created user %s", user_id)
    return user


async def set_availability(
    db: AsyncSession,
    user_id: str,
    is_available: bool,
    location: Location | None = None,
    radius_km: float | None = None,
    is_live_location: bool | None = None,
) -> User:
    """Update a traveler's availability. Omitted fields keep their current value."""
    if radius_km is not None and radius_km <= 0:
        raise InvalidInputError("Radius must be a positive number of kilometers")

    user = await get_or_create_user(db, user_id)
    user.is_available = is_available
    if location is not None:
        user.latitude = location.latitude
        user.longitude = location.longitude
        user.location_updated_at = datetime.now(timezone.utc)
    if radius_km is not None:
        user.radius_km = radius_km
    if is_live_location is not None:
        user.is_live_location = is_live_location
    if not is_available:
        user.is_live_location = False

    await db.commit()
    await db.refresh(user)
    logger.info(
        "Availability for user %s: available=%s radius=%s live=%s",
        user_id,
        user.is_available,
        user.radius_km,
        user.is_live_location,
    )
    return user


async def list_available_users(db: AsyncSession) -> list[User]:
    """Available users with both a location and a radius."""
    result = await db.execute(
        select(User).where(
            User.is_available.is_(True),
            User.latitude.is_not(None),
            User.longitude.is_not(None),
            User.radius_km.is_not(None),
        )
    )
    return list(result.scalars().all())


async def notified_listing_ids(db: AsyncSession, user_id: str) -> set[str]:
    result = await db.execute(
        select(ListingNotification.listing_id).where(ListingNotification.user_id == user_id)
    )
    return set(result.scalars().all())


def record_notified(db: AsyncSession, user_id: str, listing_id: str, channel: str) -> None:
    """Stage a notified marker. Caller commits."""
    db.add(ListingNotification(user_id=user_id, listing_id=listing_id, channel=channel))


def set_conversation(user: User, conversation: Conversation) -> None:
    """Stage a conversation change. Caller commits."""
    user.conversation = conversation


async def enter_bidding(db: AsyncSession, user_id: str, listing_id: str) -> bool:
    """Point an idle or bidding user at ``listing_id``. Caller commits.

    A user mid-delivery or rating keeps that conversation.
    """
    result = await db.execute(
        update(User)
        .where(
            User.id == user_id,
            User.conversation_state.in_([ConversationState.IDLE.value, ConversationState.BIDDING.value]),
        )
        .values(
            conversation_state=ConversationState.BIDDING.value,
            conversation_listing_id=listing_id,
        )
    )
    return result.rowcount == 1


async def leave_bidding(db: AsyncSession, user_ids: list[str], listing_id: str) -> int:
    """Return users still bidding on ``listing_id`` to IDLE. Caller commits."""
    if not user_ids:
        return 0
    result = await db.execute(
        update(User)
        .where(
            User.id.in_(user_ids),
            User.conversation_state == ConversationState.BIDDING.value,
            User.conversation_listing_id == listing_id,
        )
        .values(conversation_state=ConversationState.IDLE.value, conversation_listing_id=None)
    )
    return result.rowcount
