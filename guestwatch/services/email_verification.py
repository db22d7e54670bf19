"""
Email Verification Service

Lets a guest attach and verify an email address:
- One code per guest every 2 minutes
- 6-digit codes, stored only as SHA-256, valid for 10 minutes
- At most 5 attempts per code
- A verified email raises trust by 25 and swaps the "new" flag for "verified"

Codes are delivered through a CodeSender. The default sender posts a signed
JSON body to a configured webhook that does the actual mailing.
"""

import hashlib
import hmac
import json
import logging
import secrets
from datetime import datetime, timedelta
from typing import Protocol
from uuid import UUID

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from guestwatch.models.database import Guest
from guestwatch.services.guest_store import as_utc, utcnow
from guestwatch.services.moderation import GuestNotFoundError, clamp_trust_score

logger = logging.getLogger(__name__)

CODE_LENGTH = 6
CODE_TTL = timedelta(minutes=10)
RESEND_INTERVAL = timedelta(minutes=2)
MAX_ATTEMPTS = 5
VERIFIED_TRUST_BONUS = 25


class VerificationError(Exception):
    """Base class for verification failures."""

    pass


class VerificationRateLimited(VerificationError):
    """A code was sent too recently."""

    def __init__(self, retry_after: int):
        super().__init__(f"Please wait {retry_after} seconds before requesting another code")
        self.retry_after = retry_after


class VerificationCodeMissing(VerificationError):
    pass


class VerificationCodeExpired(VerificationError):
    pass


class TooManyAttempts(VerificationError):
    pass


class InvalidVerificationCode(VerificationError):
    def __init__(self, attempts_left: int):
        super().__init__(f"Invalid code, {attempts_left} attempts left")
        self.attempts_left = attempts_left


class CodeDeliveryError(Exception):
    """Raised when a verification code could not be handed off."""

    pass


class DeliveryNotConfiguredError(CodeDeliveryError):
    pass


def generate_code() -> str:
    return f"{secrets.randbelow(10**CODE_LENGTH):0{CODE_LENGTH}d}"


def hash_code(code: str) -> str:
    return hashlib.sha256(code.strip().encode()).hexdigest()


class CodeSender(Protocol):
    async def send(self, guest_id: UUID, email: str, code: str) -> None: ...


class WebhookCodeSender:
    """Delivers codes by POSTing JSON to a mailer webhook."""

    EVENT_TYPE = "guest.verification_code"

    def __init__(self, url: str, secret: str = "", timeout: float = 10.0):
        self.url = url
        self.secret = secret
        self.timeout = timeout

    def generate_signature(self, payload: str) -> str:
        """Generate HMAC signature for a payload."""
        return hmac.new(self.secret.encode(), payload.encode(), hashlib.sha256).hexdigest()

    async def send(self, guest_id: UUID, email: str, code: str) -> None:
        """
        Send a verification code.

        Raises:
            DeliveryNotConfiguredError: If no webhook URL is configured
            CodeDeliveryError: If the webhook is unreachable or rejects the body
        """
        if not self.url:
            raise DeliveryNotConfiguredError("Email delivery is not configured")

        payload = {
            "event_type": self.EVENT_TYPE,
            "guest_id": str(guest_id),
            "email": email,
            "code": code,
            "expires_in_minutes": int(CODE_TTL.total_seconds() // 60),
        }
        payload_json = json.dumps(payload)
        headers = {
            "Content-Type": "application/json",
            "X-Event-Type": self.EVENT_TYPE,
        }
        if self.secret:
            headers["X-Webhook-Signature"] = f"sha256={self.generate_signature(payload_json)}"

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as http:
                response = await http.post(self.url, content=payload_json, headers=headers)
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Verification code delivery failed for guest {guest_id}: {e}")
            raise CodeDeliveryError(f"Failed to send verification code: {e}") from e


class EmailVerificationService:
    """Issues and checks email verification codes for guests."""

    def __init__(self, db: AsyncSession, sender: CodeSender):
        self.db = db
        self.sender = sender

    async def _get_guest(self, guest_id: UUID) -> Guest:
        result = await self.db.execute(select(Guest).where(Guest.id == guest_id))
        guest = result.scalar_one_or_none()
        if guest is None:
            raise GuestNotFoundError(f"Guest {guest_id} not found")
        return guest

    async def request_code(self, guest_id: UUID, email: str, now: datetime | None = None) -> Guest:
        """
        Generate, store and deliver a new code.

        Args:
            guest_id: Guest requesting verification
            email: Address to verify; replaces any unverified address on file
            now: Current time, for tests

        Raises:
            VerificationRateLimited: A code was sent less than 2 minutes ago
            CodeDeliveryError: The code could not be delivered; nothing is saved
        """
        now = now or utcnow()
        guest = await self._get_guest(guest_id)

        sent_at = as_utc(guest.email_sent_at)
        if sent_at is not None and now - sent_at < RESEND_INTERVAL:
            retry_after = int((RESEND_INTERVAL - (now - sent_at)).total_seconds()) + 1
            raise VerificationRateLimited(retry_after)

        code = generate_code()
        await self.sender.send(guest.id, email, code)

        guest.email = email
        guest.email_verified = False
        guest.verification_code_hash = hash_code(code)
        guest.verification_expires_at = now + CODE_TTL
        guest.verification_attempts = 0
        guest.email_sent_at = now
        await self.db.commit()
        await self.db.refresh(guest)

        logger.info(f"Verification code sent for guest {guest_id}")
        return guest

    async def verify_code(self, guest_id: UUID, code: str, now: datetime | None = None) -> Guest:
        """
        Check a submitted code.

        Every check of a live code counts as an attempt, right or wrong.

        Returns:
            The guest, now verified

        Raises:
            VerificationCodeMissing: No code was requested
            VerificationCodeExpired: The code is older than 10 minutes
            TooManyAttempts: 5 attempts were already spent on this code
            InvalidVerificationCode: The code does not match
        """
        now = now or utcnow()
        guest = await self._get_guest(guest_id)

        if not guest.verification_code_hash:
            raise VerificationCodeMissing("No verification code requested")

        expires_at = as_utc(guest.verification_expires_at)
        if expires_at is None or now > expires_at:
            raise VerificationCodeExpired("Verification code expired")

        attempts = guest.verification_attempts or 0
        if attempts >= MAX_ATTEMPTS:
            raise TooManyAttempts("Too many attempts, request a new code")

        guest.verification_attempts = attempts + 1

        if not hmac.compare_digest(guest.verification_code_hash, hash_code(code)):
            await self.db.commit()
            raise InvalidVerificationCode(MAX_ATTEMPTS - guest.verification_attempts)

        guest.email_verified = True
        guest.verification_code_hash = None
        guest.verification_expires_at = None
        guest.verification_attempts = 0
        guest.trust_score = clamp_trust_score((guest.trust_score or 0) + VERIFIED_TRUST_BONUS)
        flags = [f for f in (guest.flags or []) if f not in ("new", "verified")]
        guest.flags = [*flags, "verified"]
        await self.db.commit()
        await self.db.refresh(guest)

        logger.info(f"Guest {guest_id} verified email")
        return guest
