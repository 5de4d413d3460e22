"""Availability, live-location re-matching, staleness eviction, rematch sweep."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from courierhub.config import settings
from courierhub.core.exceptions import InvalidStateError
from courierhub.core.scheduler import scheduler, transient_key
from courierhub.models.notification import ListingNotification
from courierhub.models.user import User
from courierhub.services import location_service
from courierhub.services.location_service import LiveLocationTracker, tracker
from courierhub.services.notification_service import EventType
from courierhub.services.proximity_service import Location

PICKUP = Location(40.7580, -73.9855)
NEAR_PICKUP = Location(40.7590, -73.9845)
FAR_AWAY = Location(34.0522, -118.2437)
T0 = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


def _offset(loc: Location, north_km: float) -> Location:
    # ~111 km per degree of latitude
    return Location(loc.latitude + north_km / 111.0, loc.longitude)


async def _user(db, user_id) -> User:
    user = await db.get(User, user_id)
    await db.refresh(user)
    return user


# ---------------------------------------------------------------------------
# LiveLocationTracker
# ---------------------------------------------------------------------------

async def test_tracker_first_update_scans():
    t = LiveLocationTracker()
    assert await t.update("u", PICKUP, T0) is True
    assert t.get("u").last_scan_at == T0


async def test_tracker_small_move_within_window_does_not_scan():
    t = LiveLocationTracker()
    await t.update("u", PICKUP, T0)
    assert await t.update("u", _offset(PICKUP, 0.05), T0 + timedelta(seconds=30)) is False
    assert t.get("u").last_update_at == T0 + timedelta(seconds=30)
    assert t.get("u").last_scan_at == T0


async def test_tracker_significant_move_scans():
    t = LiveLocationTracker()
    await t.update("u", PICKUP, T0)
    assert await t.update("u", _offset(PICKUP, 0.2), T0 + timedelta(seconds=10)) is True


async def test_tracker_rescans_after_interval():
    t = LiveLocationTracker()
    await t.update("u", PICKUP, T0)
    later = T0 + timedelta(seconds=settings.live_rescan_interval_seconds + 1)
    assert await t.update("u", PICKUP, later) is True


async def test_tracker_stale_users_and_evict():
    t = LiveLocationTracker()
    await t.update("quiet", PICKUP, T0)
    await t.update("chatty", PICKUP, T0 + timedelta(seconds=100))
    now = T0 + timedelta(seconds=settings.live_location_timeout_seconds + 1)
    assert await t.stale_users(now, settings.live_location_timeout_seconds) == ["quiet"]
    assert (await t.evict("quiet")).last_location == PICKUP
    assert await t.evict("quiet") is None
    assert t.tracked_users() == ["chatty"]


# ---------------------------------------------------------------------------
# push_location_update
# ---------------------------------------------------------------------------

async def test_push_requires_live_availability(db, make_user):
    user, _ = await make_user()
    with pytest.raises(InvalidStateError, match="Live location"):
        await location_service.push_location_update(db, user.id, PICKUP)


async def test_push_sends_capped_batch_of_nearest_as_transient(db, make_user, make_traveler, make_listing, events):
    buyer, _ = await make_user(balance=1000)
    listings = [
        await make_listing(buyer.id, pickup=_offset(PICKUP, km)) for km in (0.4, 0.1, 0.3, 0.2, 0.5)
    ]
    traveler, _ = await make_traveler(FAR_AWAY, radius_km=2, live=True)

    pushed = await location_service.push_location_update(db, traveler.id, PICKUP, now=T0)

    assert len(pushed) == settings.live_push_batch_size
    expected = [listings[1].id, listings[3].id, listings[2].id]
    assert [e.data["listing_id"] for e in pushed] == expected
    assert all(e.transient for e in pushed)
    for lid in expected:
        assert scheduler.is_scheduled(transient_key(traveler.id, lid))

    moved = await _user(db, traveler.id)
    assert (moved.latitude, moved.longitude) == (PICKUP.latitude, PICKUP.longitude)


async def test_push_never_repeats_a_listing(db, make_user, make_traveler, make_listing):
    buyer, _ = await make_user(balance=100)
    await make_listing(buyer.id)
    traveler, _ = await make_traveler(FAR_AWAY, radius_km=2, live=True)

    first = await location_service.push_location_update(db, traveler.id, PICKUP, now=T0)
    assert len(first) == 1
    far_later = T0 + timedelta(seconds=settings.live_rescan_interval_seconds + 5)
    again = await location_service.push_location_update(db, traveler.id, _offset(PICKUP, 0.5), now=far_later)
    assert again == []


async def test_push_without_significant_move_skips_scan(db, make_user, make_traveler, make_listing):
    traveler, _ = await make_traveler(FAR_AWAY, radius_km=0.25, live=True)
    await location_service.push_location_update(db, traveler.id, _offset(PICKUP, -0.3), now=T0)

    # Out of range at creation time, so fan-out skips the traveler
    buyer, _ = await make_user(balance=100)
    await make_listing(buyer.id)

    # Now in range, but a 60 m step is below the rescan threshold
    quiet = await location_service.push_location_update(
        db, traveler.id, _offset(PICKUP, -0.24), now=T0 + timedelta(seconds=20)
    )
    assert quiet == []
    moved = await location_service.push_location_update(
        db, traveler.id, _offset(PICKUP, -0.1), now=T0 + timedelta(seconds=40)
    )
    assert len(moved) == 1


async def test_transient_push_is_withdrawn(db, make_user, make_traveler, make_listing, events, monkeypatch):
    monkeypatch.setattr(settings, "transient_notification_seconds", 0.05)
    buyer, _ = await make_user(balance=100)
    listing = await make_listing(buyer.id)
    traveler, _ = await make_traveler(FAR_AWAY, radius_km=2, live=True)

    await location_service.push_location_update(db, traveler.id, PICKUP, now=T0)
    await asyncio.sleep(0.2)

    withdrawn = events.of_type(EventType.NOTIFICATION_WITHDRAWN, traveler.id)
    assert [e.data["listing_id"] for e in withdrawn] == [listing.id]


# ---------------------------------------------------------------------------
# Availability / eviction
# ---------------------------------------------------------------------------

async def test_update_availability_live_starts_tracking(db, make_user, make_listing, events):
    buyer, _ = await make_user(balance=100)
    listing = await make_listing(buyer.id)
    traveler, _ = await make_user()

    user = await location_service.update_availability(
        db, traveler.id, True, location=NEAR_PICKUP, radius_km=3, is_live_location=True
    )

    assert user.is_available and user.is_live_location
    assert tracker.get(traveler.id) is not None
    pushed = events.of_type(EventType.NEW_LISTING_NEARBY, traveler.id)
    assert [e.data["listing_id"] for e in pushed] == [listing.id]
    assert pushed[0].transient


async def test_update_availability_keeps_radius_when_omitted(db, make_user):
    traveler, _ = await make_user()
    await location_service.update_availability(db, traveler.id, True, location=PICKUP, radius_km=7)
    user = await location_service.update_availability(db, traveler.id, True, location=NEAR_PICKUP)
    assert user.radius_km == 7


async def test_going_unavailable_stops_tracking_and_withdraws(db, make_user, make_listing, events):
    buyer, _ = await make_user(balance=100)
    listing = await make_listing(buyer.id)
    traveler, _ = await make_user()
    await location_service.update_availability(
        db, traveler.id, True, location=NEAR_PICKUP, radius_km=3, is_live_location=True
    )

    user = await location_service.update_availability(db, traveler.id, False)

    assert not user.is_available and not user.is_live_location
    assert tracker.get(traveler.id) is None
    assert not scheduler.is_scheduled(transient_key(traveler.id, listing.id))
    assert events.of_type(EventType.NOTIFICATION_WITHDRAWN, traveler.id)


async def test_evict_stale_locations(db, make_user, make_listing, make_traveler, events):
    buyer, _ = await make_user(balance=100)
    listing = await make_listing(buyer.id)
    stale, _ = await make_traveler(FAR_AWAY, radius_km=2, live=True)
    fresh, _ = await make_traveler(FAR_AWAY, radius_km=2, live=True)
    await location_service.push_location_update(db, stale.id, PICKUP, now=T0)
    await location_service.push_location_update(db, fresh.id, PICKUP, now=T0 + timedelta(seconds=100))

    now = T0 + timedelta(seconds=settings.live_location_timeout_seconds + 1)
    evicted = await location_service.evict_stale_locations(db, now)

    assert evicted == [stale.id]
    gone = await _user(db, stale.id)
    assert not gone.is_available and not gone.is_live_location
    assert (await _user(db, fresh.id)).is_available
    assert not scheduler.is_scheduled(transient_key(stale.id, listing.id))
    assert scheduler.is_scheduled(transient_key(fresh.id, listing.id))
    assert events.of_type(EventType.AVAILABILITY_EXPIRED, stale.id)
    assert events.of_type(EventType.NOTIFICATION_WITHDRAWN, stale.id)


async def test_stop_live_location(db, make_traveler, events):
    traveler, _ = await make_traveler(PICKUP, radius_km=2, live=True)
    await location_service.push_location_update(db, traveler.id, PICKUP, now=T0)

    user = await location_service.stop_live_location(db, traveler.id)

    assert not user.is_available
    assert tracker.get(traveler.id) is None
    assert events.of_type(EventType.AVAILABILITY_EXPIRED, traveler.id)[0].data["reason"] == "stopped"


# ---------------------------------------------------------------------------
# Rematch sweep
# ---------------------------------------------------------------------------

async def test_rematch_sweep_catches_missed_listings_once(db, make_user, make_traveler, make_listing, monkeypatch):
    buyer, _ = await make_user(balance=100)
    traveler, _ = await make_traveler(NEAR_PICKUP, radius_km=5)

    # Listing created while fan-out was unavailable
    async def skip(*args, **kwargs):
        return []

    from courierhub.services import match_service

    monkeypatch.setattr(match_service, "notify_nearby_travelers", skip)
    listing = await make_listing(buyer.id)
    monkeypatch.undo()

    assert await location_service.rematch_sweep(db) == 1
    assert await location_service.rematch_sweep(db) == 0
    rows = (
        await db.execute(
            select(func.count(ListingNotification.id)).where(
                ListingNotification.user_id == traveler.id,
                ListingNotification.listing_id == listing.id,
            )
        )
    ).scalar()
    assert rows == 1


async def test_rematch_sweep_continues_after_user_failure(db, make_user, make_traveler, make_listing, monkeypatch, caplog):
    await make_traveler(NEAR_PICKUP, radius_km=5, id="a-broken")
    good, _ = await make_traveler(NEAR_PICKUP, radius_km=5, id="b-good")
    buyer, _ = await make_user(balance=100)

    from courierhub.services import match_service

    async def skip(*args, **kwargs):
        return []

    monkeypatch.setattr(match_service, "notify_nearby_travelers", skip)
    await make_listing(buyer.id)

    real_scan = location_service._scan_for_user

    async def flaky(db, user_id, *args, **kwargs):
        if user_id == "a-broken":
            raise RuntimeError("boom")
        return await real_scan(db, user_id, *args, **kwargs)

    monkeypatch.setattr(location_service, "_scan_for_user", flaky)

    assert await location_service.rematch_sweep(db) == 1
    assert "Rematch failed for user a-broken" in caplog.text
