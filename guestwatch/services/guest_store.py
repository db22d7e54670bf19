"""Guest identity persistence.

The identity resolver talks to a ``GuestStore``: point lookup by id or
fingerprint, partial update, and ``insert_or_get``, an insert that returns the
existing row when another writer already created the fingerprint. That last
primitive is what keeps concurrent first visits from producing duplicates.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from guestwatch.models.database import Guest

logger = logging.getLogger(__name__)


class GuestStoreError(Exception):
    """Raised when the guest store rejects a read or write."""

    pass


@dataclass
class GuestSnapshot:
    """The guest fields the resolution flow needs."""

    id: UUID
    fingerprint: str
    status: str = "active"
    post_count: int = 0
    email: str | None = None
    email_verified: bool = False
    trust_score: int = 50
    flags: list[str] = field(default_factory=list)

    @classmethod
    def from_model(cls, guest: Guest) -> "GuestSnapshot":
        return cls(
            id=guest.id,
            fingerprint=guest.fingerprint,
            status=guest.status,
            post_count=guest.post_count or 0,
            email=guest.email,
            email_verified=bool(guest.email_verified),
            trust_score=guest.trust_score,
            flags=list(guest.flags or []),
        )


class GuestStore(Protocol):
    """Record-oriented guest store."""

    async def get(self, guest_id: UUID) -> GuestSnapshot | None: ...

    async def get_by_fingerprint(self, fingerprint: str) -> GuestSnapshot | None: ...

    async def insert_or_get(
        self, fingerprint: str, values: dict[str, Any]
    ) -> tuple[GuestSnapshot, bool]: ...

    async def update(self, guest_id: UUID, changes: dict[str, Any]) -> None: ...


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive timestamps read back from SQLite."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SqlGuestStore:
    """GuestStore over an async SQLAlchemy session.

    Each write commits immediately; the resolver's steps are sequential and
    not wrapped in a surrounding transaction.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, guest_id: UUID) -> GuestSnapshot | None:
        try:
            result = await self.db.execute(select(Guest).where(Guest.id == guest_id))
        except SQLAlchemyError as e:
            raise GuestStoreError(f"Guest lookup failed: {e}") from e
        guest = result.scalar_one_or_none()
        return GuestSnapshot.from_model(guest) if guest else None

    async def get_by_fingerprint(self, fingerprint: str) -> GuestSnapshot | None:
        try:
            result = await self.db.execute(select(Guest).where(Guest.fingerprint == fingerprint))
        except SQLAlchemyError as e:
            raise GuestStoreError(f"Guest lookup failed: {e}") from e
        guest = result.scalar_one_or_none()
        return GuestSnapshot.from_model(guest) if guest else None

    def _insert(self):
        dialect = self.db.bind.dialect.name if self.db.bind is not None else "postgresql"
        if dialect == "sqlite":
            return sqlite.insert(Guest)
        return postgresql.insert(Guest)

    async def insert_or_get(
        self, fingerprint: str, values: dict[str, Any]
    ) -> tuple[GuestSnapshot, bool]:
        """Insert a guest unless the fingerprint already exists.

        Args:
            fingerprint: Unique fingerprint hash
            values: Remaining column values for a new row

        Returns:
            (guest, created) where created is False when an existing row won

        Raises:
            GuestStoreError: If the insert or the follow-up read fails
        """
        row = {**values, "fingerprint": fingerprint}
        stmt = (
            self._insert()
            .values(**row)
            .on_conflict_do_nothing(index_elements=["fingerprint"])
            .returning(Guest.id)
        )
        try:
            result = await self.db.execute(stmt)
            inserted_id = result.scalar_one_or_none()
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Error creating guest: {e}")
            raise GuestStoreError(f"Failed to create guest: {e}") from e

        if inserted_id is not None:
            guest = await self.get(inserted_id)
            created = True
        else:
            logger.info(f"Guest for fingerprint {fingerprint} already exists, reusing it")
            guest = await self.get_by_fingerprint(fingerprint)
            created = False

        if guest is None:
            raise GuestStoreError(f"Guest for fingerprint {fingerprint} vanished after insert")
        return guest, created

    async def update(self, guest_id: UUID, changes: dict[str, Any]) -> None:
        """Apply a partial update to one guest.

        Raises:
            GuestStoreError: If the update fails
        """
        if not changes:
            return
        try:
            await self.db.execute(update(Guest).where(Guest.id == guest_id).values(**changes))
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Error updating guest {guest_id}: {e}")
            raise GuestStoreError(f"Failed to update guest: {e}") from e
