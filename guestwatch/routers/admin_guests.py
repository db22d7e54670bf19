"""Admin guest console router.

Every route requires the ``X-Admin-Token`` header.
"""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from guestwatch.database import get_db
from guestwatch.dependencies import require_admin
from guestwatch.models.schemas import (
    BlockedIpCreate,
    BlockedIpResponse,
    GuestDetailsUpdate,
    GuestFlagResult,
    GuestFlagToggle,
    GuestResponse,
    GuestStats,
    GuestStatusEventResponse,
    GuestStatusUpdate,
    IpSecurityLogResponse,
    NetworkBlockRequest,
    PaginatedResponse,
)
from guestwatch.services.ip_blocklist import IpBlocklistService
from guestwatch.services.moderation import GuestModerationService, GuestNotFoundError, GuestStatus

router = APIRouter(dependencies=[Depends(require_admin)])
logger = logging.getLogger(__name__)


@router.get("", response_model=PaginatedResponse)
async def list_guests(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    status: str | None = Query(None, pattern="^(active|blocked|restricted)$"),
    search: str | None = None,
    db: AsyncSession = Depends(get_db),
):
    """List guests with pagination and filters."""
    guests, total = await GuestModerationService(db).list_guests(
        page=page, page_size=page_size, status=status, search=search
    )
    return PaginatedResponse(
        items=[GuestResponse.model_validate(g) for g in guests],
        total=total,
        page=page,
        page_size=page_size,
        pages=(total + page_size - 1) // page_size,
    )


@router.get("/stats", response_model=GuestStats)
async def guest_stats(db: AsyncSession = Depends(get_db)):
    """Get guest counts by status."""
    return GuestStats(**await GuestModerationService(db).stats())


@router.get("/blocked-ips", response_model=list[BlockedIpResponse])
async def list_blocked_ips(db: AsyncSession = Depends(get_db)):
    """List blocked networks, most recent first."""
    return await IpBlocklistService(db).list_blocked()


@router.post("/blocked-ips", response_model=BlockedIpResponse)
async def block_ip(body: BlockedIpCreate, db: AsyncSession = Depends(get_db)):
    """Block a network by IP hash."""
    return await IpBlocklistService(db).block(body.ip_hash, reason=body.reason, actor="admin")


@router.delete("/blocked-ips/{ip_hash}", status_code=204)
async def unblock_ip(ip_hash: str, db: AsyncSession = Depends(get_db)):
    """Lift a network block."""
    if not await IpBlocklistService(db).unblock(ip_hash):
        raise HTTPException(status_code=404, detail="Network is not blocked")


@router.get("/{guest_id}", response_model=GuestResponse)
async def get_guest(guest_id: UUID, db: AsyncSession = Depends(get_db)):
    """Get a guest by ID."""
    try:
        return await GuestModerationService(db).get_guest(guest_id)
    except GuestNotFoundError:
        raise HTTPException(status_code=404, detail="Guest not found")


@router.put("/{guest_id}/status", response_model=GuestResponse)
async def update_status(
    guest_id: UUID,
    body: GuestStatusUpdate,
    db: AsyncSession = Depends(get_db),
):
    """Block, restrict or reactivate a guest."""
    try:
        return await GuestModerationService(db).set_status(
            guest_id, GuestStatus(body.status), actor="admin", reason=body.reason
        )
    except GuestNotFoundError:
        raise HTTPException(status_code=404, detail="Guest not found")


@router.patch("/{guest_id}", response_model=GuestResponse)
async def update_details(
    guest_id: UUID,
    body: GuestDetailsUpdate,
    db: AsyncSession = Depends(get_db),
):
    """Save notes and trust score."""
    try:
        return await GuestModerationService(db).update_details(
            guest_id, notes=body.notes, trust_score=body.trust_score
        )
    except GuestNotFoundError:
        raise HTTPException(status_code=404, detail="Guest not found")


@router.post("/{guest_id}/flags", response_model=GuestFlagResult)
async def toggle_flag(
    guest_id: UUID,
    body: GuestFlagToggle,
    db: AsyncSession = Depends(get_db),
):
    """Add the flag if absent, remove it if present."""
    try:
        guest, added = await GuestModerationService(db).toggle_flag(guest_id, body.flag)
    except GuestNotFoundError:
        raise HTTPException(status_code=404, detail="Guest not found")
    return GuestFlagResult(flag=body.flag, added=added, flags=list(guest.flags or []))


@router.post("/{guest_id}/block-network", response_model=BlockedIpResponse)
async def block_guest_network(
    guest_id: UUID,
    body: NetworkBlockRequest,
    db: AsyncSession = Depends(get_db),
):
    """Block the network a guest was last seen on."""
    try:
        guest = await GuestModerationService(db).get_guest(guest_id)
    except GuestNotFoundError:
        raise HTTPException(status_code=404, detail="Guest not found")
    if not guest.ip_hash:
        raise HTTPException(status_code=409, detail="Guest has no recorded network")
    return await IpBlocklistService(db).block(guest.ip_hash, reason=body.reason, actor="admin")


@router.get("/{guest_id}/history", response_model=list[GuestStatusEventResponse])
async def status_history(guest_id: UUID, db: AsyncSession = Depends(get_db)):
    """Get every status transition of a guest, oldest first."""
    try:
        return await GuestModerationService(db).status_history(guest_id)
    except GuestNotFoundError:
        raise HTTPException(status_code=404, detail="Guest not found")


@router.get("/{guest_id}/security-logs", response_model=list[IpSecurityLogResponse])
async def security_logs(
    guest_id: UUID,
    limit: int = Query(100, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
):
    """Get recent network snapshots of a guest."""
    try:
        return await GuestModerationService(db).security_logs(guest_id, limit=limit)
    except GuestNotFoundError:
        raise HTTPException(status_code=404, detail="Guest not found")
