import uuid
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, Float, ForeignKey, Index, Numeric, String, Text

from courierhub.database import Base


def utcnow():
    return datetime.now(timezone.utc)


class ListingStatus(str, Enum):
    OPEN = "open"
    MATCHED = "matched"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Listing(Base):
    """A buyer's delivery request.

    State machine: open -> matched -> completed
                   open -> cancelled
    traveler_id, otp_buyer and otp_traveler are set iff status is matched or completed.
    """

    __tablename__ = "listings"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    buyer_id = Column(String(64), ForeignKey("users.id"), nullable=False)
    item_description = Column(Text, nullable=False)
    item_price = Column(Numeric(12, 2), nullable=False)
    max_fee = Column(Numeric(12, 2), nullable=False)
    reserved_amount = Column(Numeric(12, 2), nullable=False)

    pickup_latitude = Column(Float, nullable=False)
    pickup_longitude = Column(Float, nullable=False)
    destination_latitude = Column(Float, nullable=False)
    destination_longitude = Column(Float, nullable=False)

    status = Column(String(20), nullable=False, default=ListingStatus.OPEN.value)
    accepted_bid_id = Column(String(36), nullable=True)
    traveler_id = Column(String(64), ForeignKey("users.id"), nullable=True)
    otp_buyer = Column(String(12), nullable=True)
    otp_traveler = Column(String(12), nullable=True)
    buyer_confirmed = Column(Boolean, nullable=False, default=False)
    traveler_confirmed = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
    matched_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("item_price > 0", name="ck_listing_price_pos"),
        CheckConstraint("max_fee > 0", name="ck_listing_fee_pos"),
        Index("idx_listings_buyer", "buyer_id"),
        Index("idx_listings_traveler", "traveler_id"),
        Index("idx_listings_status", "status"),
    )

    @property
    def is_open(self) -> bool:
        return self.status == ListingStatus.OPEN.value

    def party_role(self, user_id: str) -> str | None:
        """Return 'buyer', 'traveler' or None for the given user."""
        if user_id == self.buyer_id:
            return "buyer"
        if self.traveler_id is not None and user_id == self.traveler_id:
            return "traveler"
        return None
