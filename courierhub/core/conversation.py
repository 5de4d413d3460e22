"""Per-user conversation state.

A user is always in exactly one ``ConversationState``. States that are about a
specific delivery carry the listing id; the constructor rejects the
combinations that make no sense, so a ``Conversation`` value is always legal.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ConversationState(str, Enum):
    IDLE = "idle"
    BIDDING = "bidding"
    CONFIRMING_DELIVERY = "confirming_delivery"
    RATING = "rating"


_REQUIRES_LISTING = frozenset({
    ConversationState.BIDDING,
    ConversationState.CONFIRMING_DELIVERY,
    ConversationState.RATING,
})


@dataclass(frozen=True)
class Conversation:
    state: ConversationState = ConversationState.IDLE
    listing_id: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.state, ConversationState):
            object.__setattr__(self, "state", ConversationState(self.state))
        if self.state in _REQUIRES_LISTING and not self.listing_id:
            raise ValueError(f"Conversation state {self.state.value} requires a listing id")
        if self.state not in _REQUIRES_LISTING and self.listing_id is not None:
            raise ValueError(f"Conversation state {self.state.value} does not refer to a listing")

    @classmethod
    def idle(cls) -> Conversation:
        return cls()

    @classmethod
    def confirming(cls, listing_id: str) -> Conversation:
        return cls(ConversationState.CONFIRMING_DELIVERY, listing_id)

    @classmethod
    def rating(cls, listing_id: str) -> Conversation:
        return cls(ConversationState.RATING, listing_id)

    @classmethod
    def bidding(cls, listing_id: str) -> Conversation:
        return cls(ConversationState.BIDDING, listing_id)

    @property
    def awaiting_otp(self) -> bool:
        return self.state is ConversationState.CONFIRMING_DELIVERY

    def refers_to(self, listing_id: str) -> bool:
        return self.listing_id == listing_id
