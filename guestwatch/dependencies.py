"""FastAPI dependencies for shared services.

The objects live on ``app.state``; ``guestwatch.main`` creates them in its
lifespan handler.
"""

import secrets

from fastapi import Header, HTTPException, Request

from guestwatch.config import get_settings
from guestwatch.services.best_effort import BestEffortDispatcher
from guestwatch.services.email_verification import CodeSender
from guestwatch.services.kv_store import KeyValueStore
from guestwatch.services.network_enrichment import GeoLookupService


def get_geo_service(request: Request) -> GeoLookupService:
    return request.app.state.geo_service


def get_durable_store(request: Request) -> KeyValueStore:
    return request.app.state.durable_store


def get_dispatcher(request: Request) -> BestEffortDispatcher:
    return request.app.state.dispatcher


def get_code_sender(request: Request) -> CodeSender:
    return request.app.state.code_sender


def require_admin(x_admin_token: str | None = Header(default=None)) -> str:
    """Reject requests without the configured admin token."""
    settings = get_settings()
    if not x_admin_token or not secrets.compare_digest(
        x_admin_token.encode("utf-8"), settings.admin_token.encode("utf-8")
    ):
        raise HTTPException(status_code=403, detail="Forbidden")
    return x_admin_token
