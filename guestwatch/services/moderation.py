"""Guest trust and moderation.

Status is a flat three-state machine (active, restricted, blocked); an
administrator may move a guest from any state to any other. Trust score is
edited independently of status and is clamped to [0, 100]. Flags are a
free-form label set toggled one label at a time.

Every status transition writes a ``guest_status_events`` row so the time a
guest was blocked survives a later unblock.
"""

import logging
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from guestwatch.models.database import Guest, GuestStatusEvent, IpSecurityLog
from guestwatch.services.guest_store import utcnow

logger = logging.getLogger(__name__)

TRUST_MIN = 0
TRUST_MAX = 100

STALE_FLAG = "stale"


class GuestStatus(str, Enum):
    """Moderation status of a guest."""

    ACTIVE = "active"
    RESTRICTED = "restricted"
    BLOCKED = "blocked"


class GuestNotFoundError(Exception):
    """Raised when a moderation action targets an unknown guest."""

    pass


def clamp_trust_score(value: int) -> int:
    """Clamp a trust score into [0, 100]."""
    return max(TRUST_MIN, min(TRUST_MAX, int(value)))


def toggle_flag(flags: list[str], flag: str) -> list[str]:
    """Remove ``flag`` if present, append it otherwise."""
    if flag in flags:
        return [f for f in flags if f != flag]
    return [*flags, flag]


def status_transition(
    current: GuestStatus | str, new_status: GuestStatus, now: datetime
) -> dict[str, Any]:
    """Column changes for moving a guest to ``new_status``.

    Any state may move to any other, including itself. Entering ``blocked``
    stamps ``blocked_at``; any other target clears it.
    """
    return {
        "status": new_status.value,
        "blocked_at": now if new_status is GuestStatus.BLOCKED else None,
    }


class GuestModerationService:
    """Administrator actions on persisted guests."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_guest(self, guest_id: UUID) -> Guest:
        result = await self.db.execute(select(Guest).where(Guest.id == guest_id))
        guest = result.scalar_one_or_none()
        if guest is None:
            raise GuestNotFoundError(f"Guest {guest_id} not found")
        return guest

    async def set_status(
        self,
        guest_id: UUID,
        new_status: GuestStatus,
        actor: str | None = None,
        reason: str | None = None,
    ) -> Guest:
        """Move a guest to a new status and record the transition.

        Args:
            guest_id: Target guest
            new_status: Target status
            actor: Who performed the action
            reason: Free-text justification

        Returns:
            The updated guest
        """
        guest = await self.get_guest(guest_id)
        previous = guest.status
        now = utcnow()

        for column, value in status_transition(previous, new_status, now).items():
            setattr(guest, column, value)

        self.db.add(
            GuestStatusEvent(
                guest_id=guest.id,
                from_status=previous,
                to_status=new_status.value,
                blocked_at=guest.blocked_at,
                actor=actor,
                reason=reason,
                created_at=now,
            )
        )
        await self.db.commit()
        await self.db.refresh(guest)

        logger.info(f"Guest {guest_id} status {previous} -> {new_status.value} by {actor or 'admin'}")
        return guest

    async def set_trust_score(self, guest_id: UUID, trust_score: int) -> Guest:
        guest = await self.get_guest(guest_id)
        guest.trust_score = clamp_trust_score(trust_score)
        await self.db.commit()
        await self.db.refresh(guest)
        return guest

    async def update_details(
        self,
        guest_id: UUID,
        notes: str | None = None,
        trust_score: int | None = None,
    ) -> Guest:
        """Save administrator notes and/or trust score together."""
        guest = await self.get_guest(guest_id)
        if notes is not None:
            guest.notes = notes
        if trust_score is not None:
            guest.trust_score = clamp_trust_score(trust_score)
        await self.db.commit()
        await self.db.refresh(guest)
        return guest

    async def toggle_flag(self, guest_id: UUID, flag: str) -> tuple[Guest, bool]:
        """Toggle one flag.

        Returns:
            (guest, added) where added tells whether the flag is now present
        """
        guest = await self.get_guest(guest_id)
        flags = list(guest.flags or [])
        guest.flags = toggle_flag(flags, flag)
        added = flag not in flags
        await self.db.commit()
        await self.db.refresh(guest)
        logger.info(f"Guest {guest_id} flag {flag} {'added' if added else 'removed'}")
        return guest, added

    async def list_guests(
        self,
        page: int = 1,
        page_size: int = 20,
        status: str | None = None,
        search: str | None = None,
    ) -> tuple[list[Guest], int]:
        """Page through guests, most recently seen first.

        ``search`` matches fingerprint, IP hash, email, country or city, so
        guests sharing a network can be found by their hash.
        """
        query = select(Guest)
        if status:
            query = query.where(Guest.status == status)
        if search:
            pattern = f"%{search}%"
            query = query.where(
                or_(
                    Guest.fingerprint.ilike(pattern),
                    Guest.ip_hash.ilike(pattern),
                    Guest.email.ilike(pattern),
                    Guest.country.ilike(pattern),
                    Guest.city.ilike(pattern),
                )
            )

        count_query = select(func.count()).select_from(query.subquery())
        total = (await self.db.execute(count_query)).scalar() or 0

        query = query.order_by(Guest.last_seen_at.desc())
        query = query.offset((page - 1) * page_size).limit(page_size)
        result = await self.db.execute(query)
        return list(result.scalars().all()), total

    async def stats(self) -> dict[str, int]:
        """Counts by status plus post and email totals."""
        result = await self.db.execute(
            select(
                func.count(Guest.id),
                func.count(Guest.id).filter(Guest.status == GuestStatus.ACTIVE.value),
                func.count(Guest.id).filter(Guest.status == GuestStatus.BLOCKED.value),
                func.count(Guest.id).filter(Guest.status == GuestStatus.RESTRICTED.value),
                func.coalesce(func.sum(Guest.post_count), 0),
                func.count(Guest.id).filter(Guest.email.is_not(None)),
            )
        )
        total, active, blocked, restricted, posts, with_email = result.one()
        return {
            "total_guests": total or 0,
            "active_guests": active or 0,
            "blocked_guests": blocked or 0,
            "restricted_guests": restricted or 0,
            "total_guest_posts": int(posts or 0),
            "guests_with_email": with_email or 0,
        }

    async def status_history(self, guest_id: UUID) -> list[GuestStatusEvent]:
        await self.get_guest(guest_id)
        result = await self.db.execute(
            select(GuestStatusEvent)
            .where(GuestStatusEvent.guest_id == guest_id)
            .order_by(GuestStatusEvent.created_at.asc())
        )
        return list(result.scalars().all())

    async def stale_guests(self, cutoff: datetime) -> list[Guest]:
        """Guests last seen before ``cutoff`` and not yet flagged stale."""
        result = await self.db.execute(
            select(Guest).where(Guest.last_seen_at < cutoff).order_by(Guest.last_seen_at.asc())
        )
        return [g for g in result.scalars().all() if STALE_FLAG not in (g.flags or [])]

    async def mark_stale(self, guests: list[Guest]) -> int:
        """Add the ``stale`` flag to each guest. Nothing is deleted."""
        for guest in guests:
            guest.flags = [*(guest.flags or []), STALE_FLAG]
        await self.db.commit()
        return len(guests)

    async def security_logs(self, guest_id: UUID, limit: int = 100) -> list[IpSecurityLog]:
        await self.get_guest(guest_id)
        result = await self.db.execute(
            select(IpSecurityLog)
            .where(IpSecurityLog.guest_id == guest_id)
            .order_by(IpSecurityLog.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())
