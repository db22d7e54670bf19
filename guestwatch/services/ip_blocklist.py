"""Network-level blocking.

Administrators block a network by its salted ``ip_hash``. Guests whose last
seen network is blocked, and any request arriving from a blocked network,
are refused when they try to post. Re-blocking an already blocked network
replaces the reason and restarts ``created_at``.
"""

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from guestwatch.models.database import BlockedIp
from guestwatch.services.guest_store import utcnow

logger = logging.getLogger(__name__)

DEFAULT_BLOCK_REASON = "Administrative Block"


class IpBlocklistService:
    """Administrator block list keyed by IP hash."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def block(
        self,
        ip_hash: str,
        reason: str | None = None,
        actor: str | None = None,
    ) -> BlockedIp:
        """Block a network, or refresh an existing block.

        Args:
            ip_hash: Salted hash of the address
            reason: Free-text justification
            actor: Who performed the action

        Returns:
            The block list entry
        """
        entry = await self.db.get(BlockedIp, ip_hash)
        if entry is None:
            entry = BlockedIp(ip_hash=ip_hash)
            self.db.add(entry)
        entry.reason = reason or DEFAULT_BLOCK_REASON
        entry.blocked_by = actor
        entry.created_at = utcnow()
        await self.db.commit()
        await self.db.refresh(entry)

        logger.info(f"Network {ip_hash[:8]}... blocked by {actor or 'admin'}")
        return entry

    async def unblock(self, ip_hash: str) -> bool:
        """Remove a block. Returns False when the network was not blocked."""
        entry = await self.db.get(BlockedIp, ip_hash)
        if entry is None:
            return False
        await self.db.delete(entry)
        await self.db.commit()
        logger.info(f"Network {ip_hash[:8]}... unblocked")
        return True

    async def is_blocked(self, *ip_hashes: str | None) -> bool:
        """Whether any of the given hashes is blocked. ``None`` entries are ignored."""
        candidates = [h for h in ip_hashes if h]
        if not candidates:
            return False
        result = await self.db.execute(
            select(BlockedIp.ip_hash).where(BlockedIp.ip_hash.in_(candidates)).limit(1)
        )
        return result.scalar_one_or_none() is not None

    async def list_blocked(self) -> list[BlockedIp]:
        result = await self.db.execute(select(BlockedIp).order_by(BlockedIp.created_at.desc()))
        return list(result.scalars().all())
