"""Guests router.

Server-side resolution for clients that report their device attributes,
plus the per-guest operations a posting client needs: refresh, post
accounting and email verification.
"""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from guestwatch.database import get_db, get_session_factory
from guestwatch.dependencies import (
    get_code_sender,
    get_dispatcher,
    get_durable_store,
    get_geo_service,
)
from guestwatch.models.database import Guest
from guestwatch.models.schemas import (
    GuestSummary,
    ResolveRequest,
    ResolveResponse,
    VerificationConfirm,
    VerificationRequest,
    VerificationSent,
)
from guestwatch.services.best_effort import BestEffortDispatcher
from guestwatch.services.email_verification import (
    CODE_TTL,
    CodeDeliveryError,
    CodeSender,
    DeliveryNotConfiguredError,
    EmailVerificationService,
    InvalidVerificationCode,
    TooManyAttempts,
    VerificationCodeExpired,
    VerificationCodeMissing,
    VerificationRateLimited,
)
from guestwatch.services.fingerprint import DeviceEnvironment, derive_fingerprint
from guestwatch.services.guest_activity import GuestActivityService, GuestBlockedError
from guestwatch.services.guest_store import SqlGuestStore
from guestwatch.services.identity_resolver import IdentityResolver, requires_email
from guestwatch.services.ip_utils import extract_client_ip, hash_ip, is_valid_ip
from guestwatch.services.kv_store import KeyValueStore, MemoryKeyValueStore
from guestwatch.services.moderation import GuestModerationService, GuestNotFoundError
from guestwatch.services.network_enrichment import ClientIPEnrichmentSource, GeoLookupService
from guestwatch.services.security_log import SecurityLogWriter
from guestwatch.services.session_token import SESSION_TOKEN_KEY

router = APIRouter()
logger = logging.getLogger(__name__)


def _summary(guest: Guest) -> GuestSummary:
    return GuestSummary(
        id=guest.id,
        status=guest.status,
        post_count=guest.post_count or 0,
        email_verified=bool(guest.email_verified),
        trust_score=guest.trust_score,
        requires_email=requires_email(guest.post_count or 0, bool(guest.email_verified)),
    )


@router.post("/resolve", response_model=ResolveResponse)
async def resolve_guest(
    body: ResolveRequest,
    request: Request,
    x_guest_session: str | None = Header(default=None),
    db: AsyncSession = Depends(get_db),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    geo: GeoLookupService = Depends(get_geo_service),
    durable_store: KeyValueStore = Depends(get_durable_store),
    dispatcher: BestEffortDispatcher = Depends(get_dispatcher),
):
    """Resolve (or create) the guest for the reported device."""
    fingerprint = derive_fingerprint(
        DeviceEnvironment.from_device_info(body.device_info), canvas=body.canvas
    )
    if body.fingerprint and body.fingerprint != fingerprint.hash:
        raise HTTPException(
            status_code=422,
            detail="Fingerprint does not match the reported device attributes",
        )

    peer = request.client.host if request.client else None
    client = extract_client_ip(request.headers, peer)

    session_store = MemoryKeyValueStore()
    if x_guest_session:
        await session_store.set(SESSION_TOKEN_KEY, x_guest_session)

    resolver = IdentityResolver(
        store=SqlGuestStore(db),
        enrichment=ClientIPEnrichmentSource(geo, client),
        durable_store=durable_store,
        session_store=session_store,
        security_logger=SecurityLogWriter(
            session_factory, user_agent=request.headers.get("user-agent")
        ),
        dispatcher=dispatcher,
    )
    result = await resolver.resolve(fingerprint.hash, fingerprint.signature, body.email)
    if not result.ok:
        raise HTTPException(status_code=500, detail=result.error)

    return ResolveResponse(
        guest_id=result.guest_id,
        fingerprint=fingerprint.hash,
        session_id=await session_store.get(SESSION_TOKEN_KEY),
        status=result.status,
        post_count=result.post_count,
        requires_email=result.requires_email,
        created=result.created,
    )


@router.get("/{guest_id}", response_model=GuestSummary)
async def get_guest(guest_id: UUID, db: AsyncSession = Depends(get_db)):
    """Get the current state of a guest."""
    try:
        guest = await GuestModerationService(db).get_guest(guest_id)
    except GuestNotFoundError:
        raise HTTPException(status_code=404, detail="Guest not found")
    return _summary(guest)


@router.post("/{guest_id}/posts", response_model=GuestSummary)
async def record_post(
    guest_id: UUID,
    request: Request,
    db: AsyncSession = Depends(get_db),
    geo: GeoLookupService = Depends(get_geo_service),
):
    """Count a post made by a guest."""
    peer = request.client.host if request.client else None
    client = extract_client_ip(request.headers, peer)
    request_ip_hash = hash_ip(client.ip, geo.salt) if is_valid_ip(client.ip) else None
    try:
        guest = await GuestActivityService(db).record_post(guest_id, request_ip_hash=request_ip_hash)
    except GuestNotFoundError:
        raise HTTPException(status_code=404, detail="Guest not found")
    except GuestBlockedError as e:
        raise HTTPException(status_code=403, detail=str(e))
    return _summary(guest)


@router.delete("/{guest_id}/posts", response_model=GuestSummary)
async def retract_post(guest_id: UUID, db: AsyncSession = Depends(get_db)):
    """Uncount a deleted post."""
    try:
        guest = await GuestActivityService(db).retract_post(guest_id)
    except GuestNotFoundError:
        raise HTTPException(status_code=404, detail="Guest not found")
    return _summary(guest)


@router.post("/{guest_id}/verification", response_model=VerificationSent)
async def request_verification(
    guest_id: UUID,
    body: VerificationRequest,
    db: AsyncSession = Depends(get_db),
    sender: CodeSender = Depends(get_code_sender),
):
    """Send a verification code to an email address."""
    service = EmailVerificationService(db, sender)
    try:
        await service.request_code(guest_id, body.email)
    except GuestNotFoundError:
        raise HTTPException(status_code=404, detail="Guest not found")
    except VerificationRateLimited as e:
        raise HTTPException(
            status_code=429, detail=str(e), headers={"Retry-After": str(e.retry_after)}
        )
    except DeliveryNotConfiguredError as e:
        raise HTTPException(status_code=503, detail=str(e))
    except CodeDeliveryError as e:
        raise HTTPException(status_code=502, detail=str(e))

    return VerificationSent(
        email=body.email,
        expires_in_minutes=int(CODE_TTL.total_seconds() // 60),
    )


@router.post("/{guest_id}/verification/confirm", response_model=GuestSummary)
async def confirm_verification(
    guest_id: UUID,
    body: VerificationConfirm,
    db: AsyncSession = Depends(get_db),
    sender: CodeSender = Depends(get_code_sender),
):
    """Check a verification code."""
    service = EmailVerificationService(db, sender)
    try:
        guest = await service.verify_code(guest_id, body.code)
    except GuestNotFoundError:
        raise HTTPException(status_code=404, detail="Guest not found")
    except (VerificationCodeMissing, VerificationCodeExpired) as e:
        raise HTTPException(status_code=409, detail=str(e))
    except TooManyAttempts as e:
        raise HTTPException(status_code=429, detail=str(e))
    except InvalidVerificationCode as e:
        raise HTTPException(status_code=422, detail=str(e))
    return _summary(guest)
