"""Wallet ledger: the only code that changes ``User.wallet_balance``.

Every movement (top-up, escrow reserve, refund, settlement, payout) is an
immutable ``WalletEntry`` row written next to the balance update.

Key design decisions:
- **Caller owns the commit** for escrow movements: ``debit``/``credit`` only
  flush, so the listing or bid transition they pair with commits in the same
  transaction or not at all.
- **Balance changes are SQL increments** (`wallet_balance = wallet_balance + delta`,
  guarded by `wallet_balance >= amount` for debits), and the row is re-read
  afterwards; PostgreSQL also takes the row lock (SELECT ... FOR UPDATE).
- **Decimal everywhere**, quantised to cents, so repeated 0.5x / 0.95x
  computations never drift.
- **Idempotency keys** (``reserve-<listing>``, ``settle-<listing>``, ...) make
  each escrow movement happen at most once per listing.
"""

from __future__ import annotations

import logging
from decimal import Decimal, ROUND_HALF_UP

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from courierhub.config import settings
from courierhub.core.exceptions import InsufficientFundsError, InvalidInputError, NotFoundError
from courierhub.models.listing import Listing, ListingStatus
from courierhub.models.user import User
from courierhub.models.wallet import EntryType, WalletEntry

logger = logging.getLogger(__name__)

_is_sqlite: bool = settings.database_url.startswith("sqlite")

CENT = Decimal("0.01")


def to_money(value: float | int | str | Decimal) -> Decimal:
    """Coerce a value to Decimal with 2 decimal places."""
    if isinstance(value, Decimal):
        return value.quantize(CENT, rounding=ROUND_HALF_UP)
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


# ---------------------------------------------------------------------------
# Escrow arithmetic
# ---------------------------------------------------------------------------

def reserve_amount(item_price, max_fee) -> Decimal:
    """Held from the buyer when the listing is created."""
    return to_money((to_money(item_price) + to_money(max_fee)) * to_money(settings.escrow_reserve_pct))


def final_amount(item_price, accepted_fee) -> Decimal:
    """Charged to the buyer when both parties confirm the handoff."""
    return to_money((to_money(item_price) + to_money(accepted_fee)) * to_money(settings.escrow_final_pct))


def traveler_payment(item_price, accepted_fee) -> Decimal:
    """Credited to the traveler when both parties confirm the handoff."""
    return to_money(
        (to_money(item_price) + to_money(accepted_fee)) * Decimal(str(settings.traveler_payout_pct))
    )


# ---------------------------------------------------------------------------
# Private helpers
# ---------------------------------------------------------------------------

async def _lock_user(db: AsyncSession, user_id: str) -> User:
    """Load the user's row as committed, overwriting any copy already in the session."""
    stmt = select(User).where(User.id == user_id).execution_options(populate_existing=True)
    if not _is_sqlite:
        stmt = stmt.with_for_update()
    user = (await db.execute(stmt)).scalar_one_or_none()
    if user is None:
        raise NotFoundError("User", user_id)
    return user


async def _find_entry(db: AsyncSession, idempotency_key: str | None) -> WalletEntry | None:
    if not idempotency_key:
        return None
    result = await db.execute(
        select(WalletEntry).where(WalletEntry.idempotency_key == idempotency_key)
    )
    return result.scalar_one_or_none()


async def _apply(
    db: AsyncSession,
    user_id: str,
    delta: Decimal,
    entry_type: EntryType,
    listing_id: str | None,
    idempotency_key: str | None,
    memo: str,
) -> WalletEntry:
    existing = await _find_entry(db, idempotency_key)
    if existing is not None:
        logger.info("Idempotent replay for key=%s, returning entry %s", idempotency_key, existing.id)
        return existing

    user = await _lock_user(db, user_id)
    if delta < 0 and to_money(user.wallet_balance) < -delta:
        raise InsufficientFundsError(to_money(user.wallet_balance), to_money(-delta))

    # The balance is only ever written as an increment of the stored value.
    stmt = (
        update(User)
        .where(User.id == user_id)
        .values(wallet_balance=User.wallet_balance + delta)
        .execution_options(synchronize_session=False)
    )
    if delta < 0:
        stmt = stmt.where(User.wallet_balance >= -delta)
    if (await db.execute(stmt)).rowcount != 1:
        user = await _lock_user(db, user_id)
        raise InsufficientFundsError(to_money(user.wallet_balance), to_money(-delta))

    user = await _lock_user(db, user_id)
    balance_after = to_money(user.wallet_balance)
    entry = WalletEntry(
        user_id=user_id,
        amount=delta,
        balance_after=balance_after,
        entry_type=entry_type.value,
        listing_id=listing_id,
        idempotency_key=idempotency_key,
        memo=memo,
    )
    db.add(entry)
    await db.flush()

    logger.info(
        "Wallet %s: %s%s for user %s (balance=%s) [%s]",
        entry_type.value,
        "+" if delta >= 0 else "",
        delta,
        user_id,
        balance_after,
        idempotency_key or "-",
    )
    return entry


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

async def debit(
    db: AsyncSession,
    user_id: str,
    amount: float | Decimal,
    entry_type: EntryType,
    *,
    listing_id: str | None = None,
    idempotency_key: str | None = None,
    memo: str = "",
) -> WalletEntry:
    """Take ``amount`` from the user's wallet. Does not commit.

    Raises:
        InsufficientFundsError: the balance would go negative.
    """
    amount_d = to_money(amount)
    if amount_d <= 0:
        raise InvalidInputError("Debit amount must be positive")
    return await _apply(db, user_id, -amount_d, entry_type, listing_id, idempotency_key, memo)


async def credit(
    db: AsyncSession,
    user_id: str,
    amount: float | Decimal,
    entry_type: EntryType,
    *,
    listing_id: str | None = None,
    idempotency_key: str | None = None,
    memo: str = "",
) -> WalletEntry:
    """Add ``amount`` to the user's wallet. Does not commit."""
    amount_d = to_money(amount)
    if amount_d <= 0:
        raise InvalidInputError("Credit amount must be positive")
    return await _apply(db, user_id, amount_d, entry_type, listing_id, idempotency_key, memo)


async def top_up(
    db: AsyncSession,
    user_id: str,
    amount: float | Decimal,
    idempotency_key: str | None = None,
) -> dict:
    """Add funds to a wallet and commit. Returns the new balance summary."""
    amount_d = to_money(amount)
    if amount_d <= 0:
        raise InvalidInputError("Invalid amount. Please enter a positive number.")
    if amount_d > to_money(settings.max_topup_amount):
        raise InvalidInputError(f"Top-up amount cannot exceed ${to_money(settings.max_topup_amount)}")

    await credit(
        db,
        user_id,
        amount_d,
        EntryType.TOPUP,
        idempotency_key=idempotency_key,
        memo="Wallet top-up",
    )
    await db.commit()

    # Deliveries that stalled on this buyer's balance can settle now.
    from courierhub.services.confirmation_service import settle_ready_listings_for_buyer

    settled = await settle_ready_listings_for_buyer(db, user_id)
    if settled:
        logger.info("Top-up by %s settled %d pending deliveries", user_id, settled)
    return await get_balance(db, user_id)


async def get_balance(db: AsyncSession, user_id: str) -> dict:
    """Return the balance summary for a user.

    Returns:
        dict with keys: user_id, balance, held_in_escrow, total_topped_up.
    """
    user = await db.get(User, user_id)
    if user is None:
        raise NotFoundError("User", user_id)
    await db.refresh(user)

    held = await db.execute(
        select(func.coalesce(func.sum(Listing.reserved_amount), 0)).where(
            Listing.buyer_id == user_id,
            Listing.status.in_([ListingStatus.OPEN.value, ListingStatus.MATCHED.value]),
        )
    )
    topped = await db.execute(
        select(func.coalesce(func.sum(WalletEntry.amount), 0)).where(
            WalletEntry.user_id == user_id,
            WalletEntry.entry_type == EntryType.TOPUP.value,
        )
    )
    return {
        "user_id": user_id,
        "balance": to_money(user.wallet_balance),
        "held_in_escrow": to_money(held.scalar() or 0),
        "total_topped_up": to_money(topped.scalar() or 0),
    }


async def get_history(
    db: AsyncSession,
    user_id: str,
    page: int = 1,
    page_size: int = 20,
) -> tuple[list[WalletEntry], int]:
    """Return paginated ledger entries for a user, newest first."""
    condition = WalletEntry.user_id == user_id

    total = (await db.execute(select(func.count(WalletEntry.id)).where(condition))).scalar() or 0

    stmt = (
        select(WalletEntry)
        .where(condition)
        .order_by(WalletEntry.created_at.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    entries = list((await db.execute(stmt)).scalars().all())
    return entries, total


async def total_debited_for_listing(db: AsyncSession, user_id: str, listing_id: str) -> Decimal:
    """Net amount the user has paid toward a listing (debits minus refunds)."""
    result = await db.execute(
        select(func.coalesce(func.sum(WalletEntry.amount), 0)).where(
            WalletEntry.user_id == user_id,
            WalletEntry.listing_id == listing_id,
        )
    )
    return to_money(-Decimal(str(result.scalar() or 0)))
