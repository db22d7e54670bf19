"""Health check router."""

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from guestwatch.database import get_db
from guestwatch.dependencies import get_dispatcher, get_durable_store
from guestwatch.services.best_effort import BestEffortDispatcher
from guestwatch.services.kv_store import KeyValueStore

router = APIRouter()

CACHE_CHECK_KEY = "health_check"


async def _check_cache(store: KeyValueStore) -> str:
    # Redis stores swallow their errors, so a failed round trip reads back None
    await store.set(CACHE_CHECK_KEY, "ok")
    healthy = await store.get(CACHE_CHECK_KEY) == "ok"
    await store.remove(CACHE_CHECK_KEY)
    return "healthy" if healthy else "unavailable"


@router.get("/health")
async def health_check(
    db: AsyncSession = Depends(get_db),
    durable_store: KeyValueStore = Depends(get_durable_store),
    dispatcher: BestEffortDispatcher = Depends(get_dispatcher),
):
    """Check database and guest cache health.

    The guest cache is an optimisation, so losing it degrades nothing but
    latency and is reported without changing the overall status.
    """
    try:
        await db.execute(text("SELECT 1"))
        db_status = "healthy"
    except Exception as e:
        db_status = f"unhealthy: {str(e)}"

    return {
        "status": "healthy" if db_status == "healthy" else "degraded",
        "database": db_status,
        "guest_cache": await _check_cache(durable_store),
        "pending_audit_tasks": dispatcher.pending,
        "version": "0.1.0",
    }


@router.get("/ready")
async def readiness_check(
    durable_store: KeyValueStore = Depends(get_durable_store),
    dispatcher: BestEffortDispatcher = Depends(get_dispatcher),
):
    """Ready once the lifespan handler has built the shared services."""
    return {"ready": durable_store is not None and dispatcher is not None}
