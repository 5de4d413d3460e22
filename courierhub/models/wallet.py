"""Append-only wallet ledger. Every balance movement is one row."""

import uuid
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import Column, DateTime, ForeignKey, Index, Numeric, String, Text

from courierhub.database import Base


def utcnow():
    return datetime.now(timezone.utc)


class EntryType(str, Enum):
    TOPUP = "topup"
    RESERVE = "reserve"  # escrow held at listing creation
    REFUND = "refund"  # escrow returned on cancellation
    SETTLEMENT = "settlement"  # buyer's final charge at completion
    PAYOUT = "payout"  # traveler credit at completion


class WalletEntry(Base):
    __tablename__ = "wallet_entries"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(64), ForeignKey("users.id"), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)  # signed: credit > 0, debit < 0
    balance_after = Column(Numeric(12, 2), nullable=False)
    entry_type = Column(String(20), nullable=False)
    listing_id = Column(String(36), nullable=True)
    idempotency_key = Column(String(80), unique=True, nullable=True)
    memo = Column(Text, default="")
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_wallet_user", "user_id"),
        Index("idx_wallet_listing", "listing_id"),
        Index("idx_wallet_created", "created_at"),
    )
