from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from courierhub.core.auth import get_current_user_id
from courierhub.database import get_db
from courierhub.services import user_service
from courierhub.services.wallet_service import get_balance, get_history, top_up

router = APIRouter(prefix="/wallet", tags=["wallet"])


# ---------------------------------------------------------------------------
# Request / Response schemas
# ---------------------------------------------------------------------------

class BalanceResponse(BaseModel):
    user_id: str
    balance: float
    held_in_escrow: float
    total_topped_up: float


class HistoryEntry(BaseModel):
    id: str
    entry_type: str
    amount: float
    balance_after: float
    listing_id: str | None = None
    memo: str | None = None
    created_at: str | None = None


class HistoryResponse(BaseModel):
    entries: list[HistoryEntry]
    total: int
    page: int
    page_size: int


class TopUpRequest(BaseModel):
    amount: float = Field(..., gt=0)
    idempotency_key: str | None = Field(default=None, max_length=64)


def _balance_response(summary: dict) -> BalanceResponse:
    return BalanceResponse(
        user_id=summary["user_id"],
        balance=float(summary["balance"]),
        held_in_escrow=float(summary["held_in_escrow"]),
        total_topped_up=float(summary["total_topped_up"]),
    )


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.get("/balance", response_model=BalanceResponse)
async def wallet_balance(
    db: AsyncSession = Depends(get_db),
    current_user: str = Depends(get_current_user_id),
):
    await user_service.get_or_create_user(db, current_user)
    return _balance_response(await get_balance(db, current_user))


@router.post("/topup", response_model=BalanceResponse)
async def wallet_topup(
    req: TopUpRequest,
    db: AsyncSession = Depends(get_db),
    current_user: str = Depends(get_current_user_id),
):
    await user_service.get_or_create_user(db, current_user)
    summary = await top_up(db, current_user, req.amount, idempotency_key=req.idempotency_key)
    return _balance_response(summary)


@router.get("/history", response_model=HistoryResponse)
async def wallet_history(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    current_user: str = Depends(get_current_user_id),
):
    entries, total = await get_history(db, current_user, page, page_size)
    return HistoryResponse(
        entries=[
            HistoryEntry(
                id=e.id,
                entry_type=e.entry_type,
                amount=float(e.amount),
                balance_after=float(e.balance_after),
                listing_id=e.listing_id,
                memo=e.memo,
                created_at=e.created_at.isoformat() if e.created_at else None,
            )
            for e in entries
        ],
        total=total,
        page=page,
        page_size=page_size,
    )
