"""Outbound events and the channels that deliver them.

The engine publishes an ``Event`` after the state transition that caused it has
committed. Delivery is best effort: a channel that raises is logged and the
remaining channels still run.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    NEW_LISTING_NEARBY = "new_listing_nearby"
    BID_RECEIVED = "bid_received"
    BID_ACCEPTED = "bid_accepted"
    BID_DECLINED = "bid_declined"
    BID_EXPIRED = "bid_expired"
    BID_WITHDRAWN = "bid_withdrawn"
    DELIVERY_MATCHED = "delivery_matched"
    OTP_CONFIRMED_BY_COUNTERPARTY = "otp_confirmed_by_counterparty"
    DELIVERY_COMPLETED = "delivery_completed"
    LISTING_CANCELLED = "listing_cancelled"
    AVAILABILITY_EXPIRED = "availability_expired"
    NOTIFICATION_WITHDRAWN = "notification_withdrawn"


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


@dataclass
class Event:
    type: EventType
    user_id: str
    data: dict[str, Any] = field(default_factory=dict)
    transient: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "user_id": self.user_id,
            "transient": self.transient,
            "timestamp": self.created_at.isoformat(),
            "data": _jsonable(self.data),
        }


class NotificationChannel:
    """A sink for events. Subclasses override ``deliver``."""

    name = "channel"

    async def deliver(self, event: Event) -> None:
        raise NotImplementedError


class WebSocketChannel(NotificationChannel):
    """Pushes each event to the recipient's open ``/ws/events`` sockets."""

    name = "websocket"
    MAX_CONNECTIONS = 2000

    def __init__(self) -> None:
        self.active: dict[WebSocket, str] = {}

    async def connect(self, ws: WebSocket, user_id: str) -> bool:
        if len(self.active) >= self.MAX_CONNECTIONS:
            await ws.close(code=4029, reason="Too many connections")
            return False
        await ws.accept()
        self.active[ws] = user_id
        return True

    def disconnect(self, ws: WebSocket) -> None:
        self.active.pop(ws, None)

    def connected_users(self) -> set[str]:
        return set(self.active.values())

    async def deliver(self, event: Event) -> None:
        data = json.dumps(event.to_dict())
        dead: list[WebSocket] = []
        for ws, user_id in list(self.active.items()):
            if user_id != event.user_id:
                continue
            try:
                await ws.send_text(data)
            except Exception:
                dead.append(ws)
        for ws in dead:
            self.disconnect(ws)


class NotificationHub:
    def __init__(self) -> None:
        self._channels: list[NotificationChannel] = []

    def register(self, channel: NotificationChannel) -> None:
        if channel not in self._channels:
            self._channels.append(channel)

    def unregister(self, channel: NotificationChannel) -> None:
        if channel in self._channels:
            self._channels.remove(channel)

    def clear(self) -> None:
        self._channels.clear()

    @property
    def channels(self) -> list[NotificationChannel]:
        return list(self._channels)

    async def publish(self, event: Event) -> None:
        """Deliver to every channel. Never raises."""
        for channel in self._channels:
            try:
                await channel.deliver(event)
            except Exception:
                logger.exception(
                    "Channel %s failed to deliver %s to user %s",
                    channel.name,
                    event.type.value,
                    event.user_id,
                )

    async def publish_all(self, events: list[Event]) -> None:
        for event in events:
            await self.publish(event)


hub = NotificationHub()
ws_channel = WebSocketChannel()


def listing_summary(listing) -> dict[str, Any]:
    return {
        "listing_id": listing.id,
        "item_description": listing.item_description,
        "item_price": listing.item_price,
        "max_fee": listing.max_fee,
        "pickup": [listing.pickup_latitude, listing.pickup_longitude],
        "destination": [listing.destination_latitude, listing.destination_longitude],
    }


def bid_summary(bid) -> dict[str, Any]:
    return {
        "bid_id": bid.id,
        "listing_id": bid.listing_id,
        "traveler_id": bid.traveler_id,
        "proposed_fee": bid.proposed_fee,
        "status": bid.status,
    }
