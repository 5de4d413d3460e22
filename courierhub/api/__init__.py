"""API router registry used by the app factory.

This keeps route module imports and inclusion order in one place so
`courierhub.main` stays focused on startup wiring.
"""

from __future__ import annotations

from fastapi import APIRouter

from . import bids, health, listings, users, wallet

API_PREFIX = "/api/v1"

API_ROUTERS: tuple[APIRouter, ...] = (
    health.router,
    users.router,
    wallet.router,
    listings.router,
    bids.router,
)

__all__ = ["API_PREFIX", "API_ROUTERS"]
