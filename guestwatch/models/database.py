"""SQLAlchemy ORM database models for guestwatch.

Defines the guest identity tables using SQLAlchemy 2.0 declarative mapping
with ``Mapped`` type annotations. All models inherit from ``Base`` which maps
dict and list annotations to JSON (JSONB on PostgreSQL).

Entity relationships:
    Guest --1:N--> GuestStatusEvent
    Guest --1:N--> IpSecurityLog
    BlockedIp (keyed by ip_hash, matched against Guest.ip_hash)
"""

from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Base class for all ORM models.

    Configures automatic JSON column mapping for ``dict[str, Any]`` and
    ``list[Any]`` type annotations. PostgreSQL stores them as JSONB; other
    backends (SQLite in tests) fall back to plain JSON.
    """

    type_annotation_map = {
        dict[str, Any]: JSONType,
        list[Any]: JSONType,
    }


class Guest(Base):
    """An anonymous visitor tracked by device fingerprint.

    One row per fingerprint; the unique constraint on ``fingerprint`` is what
    makes concurrent first visits converge on a single guest.
    """

    __tablename__ = "guests"
    __table_args__ = (
        CheckConstraint("trust_score >= 0 AND trust_score <= 100", name="ck_guests_trust_score"),
        CheckConstraint("status IN ('active', 'blocked', 'restricted')", name="ck_guests_status"),
        CheckConstraint("post_count >= 0", name="ck_guests_post_count"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    # Identification
    fingerprint: Mapped[str] = mapped_column(String(64), unique=True, index=True, nullable=False)
    session_id: Mapped[str | None] = mapped_column(String(64))

    # Email
    email: Mapped[str | None] = mapped_column(String(320), index=True)
    email_verified: Mapped[bool] = mapped_column(Boolean, default=False)

    # Activity
    post_count: Mapped[int] = mapped_column(Integer, default=0)
    comment_count: Mapped[int] = mapped_column(Integer, default=0)

    # Reported device attributes
    device_info: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)

    # Trust and moderation
    trust_score: Mapped[int] = mapped_column(Integer, default=50, index=True)
    flags: Mapped[list[Any]] = mapped_column(JSONType, default=list)
    status: Mapped[str] = mapped_column(String(16), default="active", index=True)
    notes: Mapped[str | None] = mapped_column(Text)

    # Network enrichment
    ip_hash: Mapped[str | None] = mapped_column(String(64), index=True)
    ip_source: Mapped[str | None] = mapped_column(String(16))
    country: Mapped[str | None] = mapped_column(String(128))
    city: Mapped[str | None] = mapped_column(String(128))
    isp: Mapped[str | None] = mapped_column(String(256))
    vpn_detected: Mapped[bool] = mapped_column(Boolean, default=False)
    tor_detected: Mapped[bool] = mapped_column(Boolean, default=False)

    # Email verification
    verification_code_hash: Mapped[str | None] = mapped_column(String(64))
    verification_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    verification_attempts: Mapped[int] = mapped_column(Integer, default=0)
    email_sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Timestamps
    first_seen_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    last_seen_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), index=True
    )
    blocked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Relationships
    status_events: Mapped[list["GuestStatusEvent"]] = relationship(
        back_populates="guest", cascade="all, delete-orphan"
    )
    security_logs: Mapped[list["IpSecurityLog"]] = relationship(
        back_populates="guest", cascade="all, delete-orphan"
    )


class GuestStatusEvent(Base):
    """Audit trail of moderation status transitions.

    ``Guest.blocked_at`` only describes the current block; these rows keep
    every block and unblock, including the moment each block started.
    """

    __tablename__ = "guest_status_events"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    guest_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("guests.id", ondelete="CASCADE"), index=True
    )
    from_status: Mapped[str] = mapped_column(String(16), nullable=False)
    to_status: Mapped[str] = mapped_column(String(16), nullable=False)
    blocked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    actor: Mapped[str | None] = mapped_column(String(128))
    reason: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), index=True
    )

    guest: Mapped["Guest"] = relationship(back_populates="status_events")


class IpSecurityLog(Base):
    """One network snapshot per guest resolution event."""

    __tablename__ = "ip_security_logs"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    guest_id: Mapped[UUID | None] = mapped_column(
        Uuid, ForeignKey("guests.id", ondelete="CASCADE"), index=True
    )
    ip_hash: Mapped[str | None] = mapped_column(String(64), index=True)
    ip_source: Mapped[str | None] = mapped_column(String(16))
    country: Mapped[str | None] = mapped_column(String(128))
    city: Mapped[str | None] = mapped_column(String(128))
    isp: Mapped[str | None] = mapped_column(String(256))
    vpn_detected: Mapped[bool] = mapped_column(Boolean, default=False)
    tor_detected: Mapped[bool] = mapped_column(Boolean, default=False)
    action: Mapped[str] = mapped_column(String(32), default="visit")
    user_agent: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), index=True
    )

    guest: Mapped["Guest | None"] = relationship(back_populates="security_logs")


class BlockedIp(Base):
    """A network blocked from posting, identified by its salted IP hash.

    Blocking a network affects every guest seen on it, whatever their own
    status. Raw addresses are never stored.
    """

    __tablename__ = "blocked_ips"

    ip_hash: Mapped[str] = mapped_column(String(64), primary_key=True)
    reason: Mapped[str | None] = mapped_column(Text)
    blocked_by: Mapped[str | None] = mapped_column(String(128))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
