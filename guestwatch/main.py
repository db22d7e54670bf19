"""guestwatch API - Anonymous guest identity and trust gating."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from guestwatch.config import get_settings
from guestwatch.database import engine
from guestwatch.routers import admin_guests, guest_init, guests, health
from guestwatch.services.best_effort import BestEffortDispatcher
from guestwatch.services.email_verification import WebhookCodeSender
from guestwatch.services.kv_store import RedisKeyValueStore, build_durable_store
from guestwatch.services.network_enrichment import GeoLookupService

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.api_log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

SHUTDOWN_DRAIN_SECONDS = 5.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info("Starting guestwatch API...")
    app.state.dispatcher = BestEffortDispatcher()
    app.state.durable_store = build_durable_store(
        settings.guest_cache_backend, settings.redis_url, timeout=settings.redis_timeout_seconds
    )
    app.state.geo_service = GeoLookupService(
        salt=settings.ip_hash_salt,
        base_url=settings.geo_api_url,
        timeout=settings.geo_timeout_seconds,
    )
    app.state.code_sender = WebhookCodeSender(
        url=settings.verification_webhook_url,
        secret=settings.verification_webhook_secret,
        timeout=settings.verification_timeout_seconds,
    )
    yield
    logger.info("Shutting down guestwatch API...")
    await app.state.dispatcher.drain(timeout=SHUTDOWN_DRAIN_SECONDS)
    if isinstance(app.state.durable_store, RedisKeyValueStore):
        await app.state.durable_store.close()
    await engine.dispose()


app = FastAPI(
    title="guestwatch",
    description="Anonymous guest identity resolution and trust gating",
    version="0.1.0",
    debug=settings.api_debug,
    lifespan=lifespan,
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(guest_init.router, prefix="/api", tags=["Guest Init"])
app.include_router(guests.router, prefix="/api/guests", tags=["Guests"])
app.include_router(admin_guests.router, prefix="/api/admin/guests", tags=["Admin Guests"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "guestwatch",
        "version": "0.1.0",
        "description": "Anonymous guest identity resolution and trust gating",
    }
