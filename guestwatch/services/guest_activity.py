"""Post accounting for guests.

``post_count`` drives the email gate, so it is only ever moved through
these two operations.
"""

import logging
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from guestwatch.models.database import Guest
from guestwatch.services.guest_store import utcnow
from guestwatch.services.ip_blocklist import IpBlocklistService
from guestwatch.services.moderation import GuestNotFoundError, GuestStatus

logger = logging.getLogger(__name__)


class GuestBlockedError(Exception):
    """Raised when a blocked guest tries to post."""

    pass


class NetworkBlockedError(GuestBlockedError):
    """Raised when the guest's network is on the block list."""

    pass


class GuestActivityService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def _get_guest(self, guest_id: UUID) -> Guest:
        result = await self.db.execute(select(Guest).where(Guest.id == guest_id))
        guest = result.scalar_one_or_none()
        if guest is None:
            raise GuestNotFoundError(f"Guest {guest_id} not found")
        return guest

    async def record_post(self, guest_id: UUID, request_ip_hash: str | None = None) -> Guest:
        """Count a new post.

        Args:
            guest_id: Posting guest
            request_ip_hash: Hash of the address the post arrives from, checked
                against the block list together with the guest's last network

        Raises:
            GuestNotFoundError: Unknown guest
            GuestBlockedError: The guest is blocked
            NetworkBlockedError: The guest's network is blocked
        """
        guest = await self._get_guest(guest_id)
        if guest.status == GuestStatus.BLOCKED.value:
            logger.warning(f"Blocked guest {guest_id} attempted to post")
            raise GuestBlockedError("Guest is blocked from posting")
        if await IpBlocklistService(self.db).is_blocked(guest.ip_hash, request_ip_hash):
            logger.warning(f"Guest {guest_id} attempted to post from a blocked network")
            raise NetworkBlockedError("Your network has been blocked from posting")

        await self.db.execute(
            update(Guest)
            .where(Guest.id == guest_id)
            .values(post_count=Guest.post_count + 1, last_seen_at=utcnow())
        )
        await self.db.commit()
        await self.db.refresh(guest)
        return guest

    async def retract_post(self, guest_id: UUID) -> Guest:
        """Uncount a deleted post; never goes below zero."""
        guest = await self._get_guest(guest_id)
        await self.db.execute(
            update(Guest)
            .where(Guest.id == guest_id, Guest.post_count > 0)
            .values(post_count=Guest.post_count - 1)
        )
        await self.db.commit()
        await self.db.refresh(guest)
        return guest
