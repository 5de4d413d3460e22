from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String, UniqueConstraint

from courierhub.database import Base


def utcnow():
    return datetime.now(timezone.utc)


class ListingNotification(Base):
    """One row per (user, listing) the user has already been told about."""

    __tablename__ = "listing_notifications"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), ForeignKey("users.id"), nullable=False)
    listing_id = Column(String(36), ForeignKey("listings.id"), nullable=False)
    channel = Column(String(20), nullable=False, default="fanout")  # fanout | live | sweep
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "listing_id", name="uq_notification_user_listing"),
        Index("idx_notifications_user", "user_id"),
    )
