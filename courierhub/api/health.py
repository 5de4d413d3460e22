import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import func, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from courierhub.core.scheduler import scheduler
from courierhub.database import get_db
from courierhub.models.listing import Listing, ListingStatus
from courierhub.models.user import User
from courierhub.schemas.common import HealthResponse
from courierhub.services.location_service import tracker

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])

_VERSION = "0.1.0"


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_db)):
    users = (await db.execute(select(func.count(User.id)))).scalar() or 0
    open_listings = (
        await db.execute(select(func.count(Listing.id)).where(Listing.status == ListingStatus.OPEN.value))
    ).scalar() or 0

    return HealthResponse(
        status="healthy",
        version=_VERSION,
        users_count=users,
        open_listings_count=open_listings,
        scheduled_jobs=len(scheduler.pending_keys()),
        tracked_travelers=len(tracker.tracked_users()),
    )


@router.get("/health/ready")
async def readiness_check(db: AsyncSession = Depends(get_db)):
    """Readiness check: verifies DB connectivity."""
    try:
        await db.execute(text("SELECT 1"))
        return {"status": "ready", "database": "connected"}
    except Exception:
        logger.exception("Readiness check failed, database unreachable")
        return JSONResponse(
            status_code=503,
            content={"status": "not_ready", "database": "unreachable"},
        )
