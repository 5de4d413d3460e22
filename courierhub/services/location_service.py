"""Traveler availability, live-location re-matching, and the rematch sweeps.

``LiveLocationTracker`` owns the per-user tracking records (last position,
last update, last scan). The update handler and the staleness sweep both go
through its lock, so a sweep never evicts a user half way through an update.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from courierhub.config import settings
from courierhub.core.exceptions import InvalidStateError
from courierhub.core.scheduler import scheduler, transient_key
from courierhub.models.user import User
from courierhub.services import listing_service, user_service
from courierhub.services.notification_service import Event, EventType, hub, listing_summary
from courierhub.services.proximity_service import Location, haversine_km, listings_within, location_of

logger = logging.getLogger(__name__)


@dataclass
class TrackingRecord:
    last_location: Location
    last_update_at: datetime
    last_scan_at: datetime | None = None


class LiveLocationTracker:
    def __init__(self) -> None:
        self._records: dict[str, TrackingRecord] = {}
        self._lock = asyncio.Lock()

    async def update(self, user_id: str, location: Location, now: datetime) -> bool:
        """Record a position. Returns True when the caller should rescan listings."""
        async with self._lock:
            record = self._records.get(user_id)
            if record is None or record.last_scan_at is None:
                needs_scan = True
            else:
                moved_km = haversine_km(record.last_location, location)
                idle_seconds = (now - record.last_scan_at).total_seconds()
                needs_scan = (
                    moved_km > settings.live_move_threshold_km
                    or idle_seconds > settings.live_rescan_interval_seconds
                )
            if record is None:
                record = TrackingRecord(last_location=location, last_update_at=now)
                self._records[user_id] = record
            record.last_location = location
            record.last_update_at = now
            if needs_scan:
                record.last_scan_at = now
            return needs_scan

    async def evict(self, user_id: str) -> TrackingRecord | None:
        async with self._lock:
            return self._records.pop(user_id, None)

    async def stale_users(self, now: datetime, timeout_seconds: float) -> list[str]:
        async with self._lock:
            return [
                user_id
                for user_id, record in self._records.items()
                if (now - record.last_update_at).total_seconds() > timeout_seconds
            ]

    def get(self, user_id: str) -> TrackingRecord | None:
        return self._records.get(user_id)

    def tracked_users(self) -> list[str]:
        return sorted(self._records)

    def clear(self) -> None:
        self._records.clear()


tracker = LiveLocationTracker()


# ---------------------------------------------------------------------------
# Transient pushes
# ---------------------------------------------------------------------------

async def _withdraw_notification(user_id: str, listing_id: str) -> None:
    await hub.publish(Event(EventType.NOTIFICATION_WITHDRAWN, user_id, {"listing_id": listing_id}))


def _schedule_withdrawal(user_id: str, listing_id: str) -> None:
    scheduler.schedule(
        transient_key(user_id, listing_id),
        settings.transient_notification_seconds,
        lambda: _withdraw_notification(user_id, listing_id),
    )


async def withdraw_transient_notifications(user_id: str) -> int:
    """Withdraw every transient push still on screen for a user."""
    prefix = transient_key(user_id, "")
    withdrawn = 0
    for key in scheduler.pending_keys():
        if not key.startswith(prefix):
            continue
        if scheduler.cancel(key):
            await _withdraw_notification(user_id, key[len(prefix):])
            withdrawn += 1
    return withdrawn


async def _scan_for_user(
    db: AsyncSession,
    user_id: str,
    origin: Location,
    radius_km: float,
    channel: str,
    limit: int | None = None,
) -> list[Event]:
    """Notify a user of OPEN listings in range they have not been told about."""
    notified = await user_service.notified_listing_ids(db, user_id)
    listings = [
        listing
        for listing in await listing_service.list_open_listings(db, exclude_buyer_id=user_id)
        if listing.id not in notified
    ]
    hits = listings_within(listings, origin, radius_km)
    if limit is not None:
        hits = hits[:limit]
    if not hits:
        return []

    transient = channel == "live"
    events = [
        Event(
            EventType.NEW_LISTING_NEARBY,
            user_id,
            {**listing_summary(listing), "distance_km": round(distance, 2), "actions": ["bid", "accept", "decline"]},
            transient=transient,
        )
        for listing, distance in hits
    ]
    for event in events:
        user_service.record_notified(db, user_id, event.data["listing_id"], channel)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        logger.warning("Concurrent notification for user %s, skipping this scan", user_id)
        return []

    await hub.publish_all(events)
    if transient:
        for event in events:
            _schedule_withdrawal(user_id, event.data["listing_id"])
    logger.info("Pushed %d nearby listings to %s via %s", len(events), user_id, channel)
    return events


# ---------------------------------------------------------------------------
# Availability
# ---------------------------------------------------------------------------

async def update_availability(
    db: AsyncSession,
    user_id: str,
    is_available: bool,
    location: Location | None = None,
    radius_km: float | None = None,
    is_live_location: bool | None = None,
) -> User:
    """Set availability and start or stop live tracking to match it."""
    user = await user_service.set_availability(
        db, user_id, is_available, location=location, radius_km=radius_km, is_live_location=is_live_location
    )
    if not user.is_available or not user.is_live_location:
        if await tracker.evict(user_id) is not None:
            await withdraw_transient_notifications(user_id)

    origin = location_of(user)
    if not user.is_available or origin is None or user.radius_km is None:
        return user

    try:
        if user.is_live_location:
            await push_location_update(db, user_id, origin)
        else:
            await _scan_for_user(db, user_id, origin, user.radius_km, "sweep")
    except Exception:
        await db.rollback()
        logger.exception("Initial scan failed for user %s", user_id)
    return user


async def push_location_update(
    db: AsyncSession,
    user_id: str,
    location: Location,
    now: datetime | None = None,
) -> list[Event]:
    """Handle one live-location update and return the transient pushes it caused.

    A rescan happens on the first update, after a significant move, or once
    the rescan interval has passed since the last scan. At most
    ``live_push_batch_size`` of the nearest new listings are pushed.
    """
    now = now or datetime.now(timezone.utc)
    user = await user_service.get_or_create_user(db, user_id)
    if not (user.is_available and user.is_live_location):
        raise InvalidStateError("Live location sharing is not active; set your availability first")
    if user.radius_km is None:
        raise InvalidStateError("Set a search radius before sharing your live location")

    user.latitude = location.latitude
    user.longitude = location.longitude
    user.location_updated_at = now
    radius_km = user.radius_km
    await db.commit()

    if not await tracker.update(user_id, location, now):
        return []
    return await _scan_for_user(
        db, user_id, location, radius_km, "live", limit=settings.live_push_batch_size
    )


async def _expire_availability(db: AsyncSession, user_id: str, reason: str) -> User:
    await tracker.evict(user_id)
    user = await user_service.get_user(db, user_id)
    user.is_available = False
    user.is_live_location = False
    await db.commit()
    await db.refresh(user)

    withdrawn = await withdraw_transient_notifications(user_id)
    logger.info("User %s is no longer available (%s), withdrew %d pushes", user_id, reason, withdrawn)
    await hub.publish(Event(EventType.AVAILABILITY_EXPIRED, user_id, {"reason": reason}))
    return user


async def stop_live_location(db: AsyncSession, user_id: str) -> User:
    return await _expire_availability(db, user_id, "stopped")


async def evict_stale_locations(db: AsyncSession, now: datetime | None = None) -> list[str]:
    """Mark travelers unavailable whose live location has gone quiet."""
    now = now or datetime.now(timezone.utc)
    evicted: list[str] = []
    for user_id in await tracker.stale_users(now, settings.live_location_timeout_seconds):
        try:
            await _expire_availability(db, user_id, "live location timed out")
            evicted.append(user_id)
        except Exception:
            await db.rollback()
            logger.exception("Failed to evict stale location for user %s", user_id)
    return evicted


async def rematch_sweep(db: AsyncSession) -> int:
    """Re-scan every available traveler against OPEN listings they have not seen."""
    targets = []
    for user in await user_service.list_available_users(db):
        origin = location_of(user)
        if origin is not None:
            targets.append((user.id, origin, user.radius_km))

    pushed = 0
    for user_id, origin, radius_km in targets:
        try:
            pushed += len(await _scan_for_user(db, user_id, origin, radius_km, "sweep"))
        except Exception:
            await db.rollback()
            logger.exception("Rematch failed for user %s", user_id)
    return pushed
