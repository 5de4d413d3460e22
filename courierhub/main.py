import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from courierhub.core.exceptions import CourierError
from courierhub.database import init_db
from courierhub.models import *  # noqa: F403
from courierhub.services.notification_service import hub, ws_channel

APP_VERSION = "0.1.0"
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    # Startup: create tables
    await init_db()
    from courierhub.config import settings
    from courierhub.core.scheduler import scheduler
    from courierhub.database import get_session_factory

    hub.register(ws_channel)

    # Live travelers who went quiet lose their availability
    async def _stale_location_loop() -> None:
        from courierhub.services.location_service import evict_stale_locations

        while True:
            await asyncio.sleep(settings.stale_location_sweep_seconds)
            try:
                async with get_session_factory()() as db:
                    await evict_stale_locations(db)
            except Exception:
                logger.exception("Background task error")

    # Catch listings created while a traveler was between location updates
    async def _rematch_loop() -> None:
        from courierhub.services.location_service import rematch_sweep

        while True:
            await asyncio.sleep(settings.rematch_sweep_seconds)
            try:
                async with get_session_factory()() as db:
                    await rematch_sweep(db)
            except Exception:
                logger.exception("Background task error")

    # Bid timers live in memory; expire whatever a restart left behind
    async def _bid_expiry_loop() -> None:
        from courierhub.services.match_service import expire_overdue_bids

        while True:
            try:
                async with get_session_factory()() as db:
                    await expire_overdue_bids(db)
            except Exception:
                logger.exception("Background task error")
            await asyncio.sleep(settings.bid_expiry_sweep_seconds)

    tasks = [
        asyncio.create_task(_stale_location_loop()),
        asyncio.create_task(_rematch_loop()),
        asyncio.create_task(_bid_expiry_loop()),
    ]

    yield

    # Shutdown: cancel background tasks and pending timers, dispose connection pool
    for task in tasks:
        task.cancel()
    scheduler.cancel_all()
    hub.unregister(ws_channel)

    from courierhub.database import dispose_engine

    await dispose_engine()


def create_app() -> FastAPI:
    app = FastAPI(
        title="CourierHub",
        description="Peer-to-peer delivery marketplace: listings, bids, escrow and OTP handoff",
        version=APP_VERSION,
        lifespan=lifespan,
    )

    # CORS configurable via CORS_ORIGINS env var
    from courierhub.config import settings

    allowed_origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Rejected operations carry their error kind next to the message
    @app.exception_handler(CourierError)
    async def courier_error_handler(request: Request, exc: CourierError) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={"code": exc.code, "detail": exc.detail},
            headers=exc.headers,
        )

    # Register REST routers
    from courierhub.api import API_PREFIX, API_ROUTERS

    for router in API_ROUTERS:
        app.include_router(router, prefix=API_PREFIX)

    # Per-user event stream (JWT-authenticated)
    @app.websocket("/ws/events")
    async def event_stream(ws: WebSocket, token: str | None = Query(default=None)) -> None:
        from courierhub.core.auth import decode_token

        if not token:
            await ws.close(code=4001, reason="Missing token query parameter")
            return
        try:
            payload = decode_token(token)
        except Exception:
            await ws.close(code=4003, reason="Invalid or expired token")
            return

        connected = await ws_channel.connect(ws, str(payload["sub"]))
        if not connected:
            return
        try:
            while True:
                # Keep connection alive, receive pings
                await ws.receive_text()
        except WebSocketDisconnect:
            ws_channel.disconnect(ws)

    return app


app = create_app()


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    import uvicorn

    from courierhub.config import settings

    uvicorn.run("courierhub.main:app", host=settings.courierhub_host, port=settings.courierhub_port)
