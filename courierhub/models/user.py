from datetime import datetime, timezone

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, Float, Index, Integer, Numeric, String

from courierhub.core.conversation import Conversation, ConversationState
from courierhub.database import Base


def utcnow():
    return datetime.now(timezone.utc)


class User(Base):
    """A buyer and/or traveler. Created on first interaction, never deleted."""

    __tablename__ = "users"

    id = Column(String(64), primary_key=True)  # opaque id from the identity provider
    username = Column(String(100), nullable=True)
    first_name = Column(String(100), nullable=True)

    # Mutated only through wallet_service
    wallet_balance = Column(Numeric(12, 2), nullable=False, default=0)

    rating = Column(Numeric(3, 2), nullable=False, default=5)  # mean of all reviews received
    rating_count = Column(Integer, nullable=False, default=0)

    # Availability
    is_available = Column(Boolean, nullable=False, default=False)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    radius_km = Column(Float, nullable=True)
    is_live_location = Column(Boolean, nullable=False, default=False)
    location_updated_at = Column(DateTime(timezone=True), nullable=True)

    # Conversation
    conversation_state = Column(String(30), nullable=False, default=ConversationState.IDLE.value)
    conversation_listing_id = Column(String(36), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("wallet_balance >= 0", name="ck_user_wallet_nonneg"),
        CheckConstraint("rating >= 0 AND rating <= 5", name="ck_user_rating_range"),
        Index("idx_users_available", "is_available"),
    )

    @property
    def has_location(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    @property
    def conversation(self) -> Conversation:
        return Conversation(ConversationState(self.conversation_state), self.conversation_listing_id)

    @conversation.setter
    def conversation(self, value: Conversation) -> None:
        self.conversation_state = value.state.value
        self.conversation_listing_id = value.listing_id
