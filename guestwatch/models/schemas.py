"""Pydantic schemas for API request/response validation."""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, EmailStr, Field


# ============================================================================
# Network Enrichment Schemas
# ============================================================================


class ClientGeoData(BaseModel):
    """Response of ``GET /api/guest-init``. Never carries the raw IP."""

    ip_hash: str
    country: str
    city: str
    isp: str
    vpn_detected: bool = False
    tor_detected: bool = False
    ip_source: str
    debug: dict[str, Any] | None = None


# ============================================================================
# Guest Resolution Schemas
# ============================================================================


class ResolveRequest(BaseModel):
    """Device attributes reported by a client, plus an optional email.

    ``fingerprint`` is checked against the hash recomputed from
    ``device_info`` when both are supplied.
    """

    device_info: dict[str, Any] = {}
    canvas: str | None = None
    fingerprint: str | None = None
    email: EmailStr | None = None


class ResolveResponse(BaseModel):
    """Schema for a guest resolution result."""

    guest_id: UUID
    fingerprint: str
    session_id: str | None = None
    status: str
    post_count: int
    requires_email: bool
    created: bool


class GuestSummary(BaseModel):
    """What a guest may see about itself."""

    id: UUID
    status: str
    post_count: int
    email_verified: bool = False
    trust_score: int
    requires_email: bool = False

    class Config:
        from_attributes = True


# ============================================================================
# Email Verification Schemas
# ============================================================================


class VerificationRequest(BaseModel):
    email: EmailStr


class VerificationConfirm(BaseModel):
    code: str = Field(..., min_length=6, max_length=6, pattern="^[0-9]{6}$")


class VerificationSent(BaseModel):
    sent: bool = True
    email: str
    expires_in_minutes: int


# ============================================================================
# Admin Guest Console Schemas
# ============================================================================


class GuestResponse(BaseModel):
    """Schema for the full guest record shown to administrators."""

    id: UUID
    fingerprint: str
    session_id: str | None = None
    email: str | None = None
    email_verified: bool = False
    post_count: int = 0
    comment_count: int = 0
    device_info: dict[str, Any] = {}
    trust_score: int = 50
    flags: list[str] = []
    status: str = "active"
    notes: str | None = None
    ip_hash: str | None = None
    ip_source: str | None = None
    country: str | None = None
    city: str | None = None
    isp: str | None = None
    vpn_detected: bool = False
    tor_detected: bool = False
    first_seen_at: datetime | None = None
    last_seen_at: datetime | None = None
    blocked_at: datetime | None = None

    class Config:
        from_attributes = True


class GuestStatusUpdate(BaseModel):
    status: str = Field(..., pattern="^(active|blocked|restricted)$")
    reason: str | None = None


class GuestDetailsUpdate(BaseModel):
    """Notes and trust score are saved together; either may be omitted.

    Trust scores outside [0, 100] are accepted and clamped.
    """

    notes: str | None = None
    trust_score: int | None = None


class GuestFlagToggle(BaseModel):
    flag: str = Field(..., min_length=1, max_length=32)


class GuestFlagResult(BaseModel):
    flag: str
    added: bool
    flags: list[str]


class GuestStatusEventResponse(BaseModel):
    id: UUID
    from_status: str
    to_status: str
    blocked_at: datetime | None = None
    actor: str | None = None
    reason: str | None = None
    created_at: datetime | None = None

    class Config:
        from_attributes = True


class IpSecurityLogResponse(BaseModel):
    id: UUID
    ip_hash: str | None = None
    ip_source: str | None = None
    country: str | None = None
    city: str | None = None
    isp: str | None = None
    vpn_detected: bool = False
    tor_detected: bool = False
    action: str
    user_agent: str | None = None
    created_at: datetime | None = None

    class Config:
        from_attributes = True


class BlockedIpCreate(BaseModel):
    ip_hash: str = Field(..., pattern="^[0-9a-f]{32,64}$")
    reason: str | None = None


class NetworkBlockRequest(BaseModel):
    """Block the network a guest was last seen on."""

    reason: str | None = None


class BlockedIpResponse(BaseModel):
    ip_hash: str
    reason: str | None = None
    blocked_by: str | None = None
    created_at: datetime | None = None

    class Config:
        from_attributes = True


class GuestStats(BaseModel):
    """Schema for guest statistics."""

    total_guests: int = 0
    active_guests: int = 0
    blocked_guests: int = 0
    restricted_guests: int = 0
    total_guest_posts: int = 0
    guests_with_email: int = 0


# ============================================================================
# Pagination
# ============================================================================


class PaginatedResponse(BaseModel):
    """Schema for paginated responses."""

    items: list[Any]
    total: int
    page: int
    page_size: int
    pages: int
