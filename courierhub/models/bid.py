import uuid
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Numeric, String

from courierhub.database import Base


def utcnow():
    return datetime.now(timezone.utc)


class BidStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    EXPIRED = "expired"


class Bid(Base):
    """A traveler's offer to deliver a listing for ``proposed_fee``.

    pending -> accepted | declined | expired. Terminal states never change.
    """

    __tablename__ = "bids"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    listing_id = Column(String(36), ForeignKey("listings.id"), nullable=False)
    traveler_id = Column(String(64), ForeignKey("users.id"), nullable=False)
    proposed_fee = Column(Numeric(12, 2), nullable=False)
    status = Column(String(20), nullable=False, default=BidStatus.PENDING.value)
    is_direct_accept = Column(Boolean, nullable=False, default=False)
    decline_reason = Column(String(100), nullable=True)

    timestamp = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    expires_at = Column(DateTime(timezone=True), nullable=True)  # NULL for direct accepts
    decided_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_bids_listing", "listing_id"),
        Index("idx_bids_traveler", "traveler_id"),
        Index("idx_bids_status", "status"),
    )

    @property
    def is_pending(self) -> bool:
        return self.status == BidStatus.PENDING.value
