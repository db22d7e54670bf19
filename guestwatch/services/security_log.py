"""Server-side security audit log for guest resolutions.

Each resolution merges the network snapshot into the guest (keeping existing
values where the new snapshot has none) and appends an ``ip_security_logs``
row. Callers run this as a best-effort task; it owns its session because it
usually outlives the request that triggered it.
"""

import logging
from typing import Protocol
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from guestwatch.models.database import Guest, IpSecurityLog
from guestwatch.services.network_enrichment import NetworkEnrichment

logger = logging.getLogger(__name__)


class SecurityLogger(Protocol):
    async def log_resolution(
        self, guest_id: UUID, enrichment: NetworkEnrichment | None
    ) -> None: ...


class SecurityLogWriter:
    """Writes resolution events to the database."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        user_agent: str | None = None,
        action: str = "visit",
    ):
        self.session_factory = session_factory
        self.user_agent = user_agent
        self.action = action

    async def log_resolution(self, guest_id: UUID, enrichment: NetworkEnrichment | None) -> None:
        """Record one resolution event.

        Args:
            guest_id: Resolved guest
            enrichment: Network snapshot, if one was obtained
        """
        snapshot = enrichment or NetworkEnrichment()

        async with self.session_factory() as session:
            result = await session.execute(select(Guest).where(Guest.id == guest_id))
            guest = result.scalar_one_or_none()
            if guest is None:
                logger.warning(f"Security log skipped, guest {guest_id} not found")
                return

            for column in ("ip_hash", "ip_source", "country", "city", "isp"):
                value = getattr(snapshot, column)
                if value is not None:
                    setattr(guest, column, value)
            if enrichment is not None:
                guest.vpn_detected = snapshot.vpn_detected
                guest.tor_detected = snapshot.tor_detected

            session.add(
                IpSecurityLog(
                    guest_id=guest_id,
                    ip_hash=snapshot.ip_hash,
                    ip_source=snapshot.ip_source,
                    country=snapshot.country,
                    city=snapshot.city,
                    isp=snapshot.isp,
                    vpn_detected=snapshot.vpn_detected,
                    tor_detected=snapshot.tor_detected,
                    action=self.action,
                    user_agent=self.user_agent,
                )
            )
            await session.commit()

        logger.debug(f"Security log recorded for guest {guest_id}")
