"""Great-circle distance and radius filtering.

Pure functions over (latitude, longitude) pairs; no database access.
"""

from __future__ import annotations

import math
from collections.abc import Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from courierhub.models.listing import Listing
    from courierhub.models.user import User

EARTH_RADIUS_KM = 6371.0


@dataclass(frozen=True)
class Location:
    latitude: float
    longitude: float

    def __post_init__(self) -> None:
        if not -90 <= self.latitude <= 90:
            raise ValueError(f"latitude {self.latitude} out of range")
        if not -180 <= self.longitude <= 180:
            raise ValueError(f"longitude {self.longitude} out of range")

    @property
    def is_anywhere(self) -> bool:
        """(0, 0) is the 'anywhere' sentinel: it matches every traveler."""
        return self.latitude == 0 and self.longitude == 0


ANYWHERE = Location(0.0, 0.0)


def haversine_km(a: Location, b: Location) -> float:
    """Distance in km between two points on a sphere of radius 6371 km."""
    d_lat = math.radians(b.latitude - a.latitude)
    d_lon = math.radians(b.longitude - a.longitude)
    h = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(a.latitude)) * math.cos(math.radians(b.latitude)) * math.sin(d_lon / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def within_radius(origin: Location, target: Location, radius_km: float) -> tuple[bool, float]:
    """Return (matches, distance_km). The anywhere sentinel always matches."""
    distance = haversine_km(origin, target)
    if target.is_anywhere:
        return True, distance
    return distance <= radius_km, distance


def pickup_of(listing: Listing) -> Location:
    return Location(listing.pickup_latitude, listing.pickup_longitude)


def location_of(user: User) -> Location | None:
    if not user.has_location:
        return None
    return Location(user.latitude, user.longitude)


def listings_within(
    listings: Iterable[Listing],
    origin: Location,
    radius_km: float,
) -> list[tuple[Listing, float]]:
    """Listings whose pickup is within ``radius_km`` of ``origin``, nearest first."""
    hits: list[tuple[Listing, float]] = []
    for listing in listings:
        matches, distance = within_radius(origin, pickup_of(listing), radius_km)
        if matches:
            hits.append((listing, distance))
    hits.sort(key=lambda item: item[1])
    return hits


def travelers_near(users: Iterable[User], pickup: Location) -> list[tuple[User, float]]:
    """Available users with a known location whose own radius covers ``pickup``."""
    hits: list[tuple[User, float]] = []
    for user in users:
        origin = location_of(user)
        if origin is None or user.radius_km is None:
            continue
        matches, distance = within_radius(origin, pickup, user.radius_km)
        if matches:
            hits.append((user, distance))
    hits.sort(key=lambda item: item[1])
    return hits
