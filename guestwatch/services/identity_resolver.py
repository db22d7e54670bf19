"""Guest identity resolution.

Reconciles a locally derived fingerprint with the stored guest record:

    fingerprint -> cache lookup -> insert-or-get / update -> enrichment merge
                -> cache write -> audit log (best effort) -> gating decision

Failures in the primary create/update path come back as a typed
``ResolutionResult``; enrichment and audit failures are logged and swallowed.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any
from uuid import UUID

from guestwatch.services.best_effort import BestEffortDispatcher
from guestwatch.services.fingerprint import DeviceSignature
from guestwatch.services.guest_store import GuestSnapshot, GuestStore, GuestStoreError, utcnow
from guestwatch.services.kv_store import KeyValueStore, guest_cache_key
from guestwatch.services.network_enrichment import EnrichmentSource, NetworkEnrichment
from guestwatch.services.security_log import SecurityLogger
from guestwatch.services.session_token import SessionTokenIssuer

logger = logging.getLogger(__name__)

DEFAULT_TRUST_SCORE = 50
EMAIL_GATE_POST_THRESHOLD = 2
NEW_GUEST_FLAG = "new"


def requires_email(post_count: int, email_verified: bool) -> bool:
    """Whether a guest must verify an email before posting again.

    This is product policy evaluated here; nothing in the store enforces it.
    """
    return post_count >= EMAIL_GATE_POST_THRESHOLD and not email_verified


class ResolutionErrorKind(str, Enum):
    """Why a resolution produced no identity."""

    NOT_READY = "not_ready"
    PERSISTENCE_FAILURE = "persistence_failure"


@dataclass
class ResolutionResult:
    """Outcome of a resolution attempt."""

    guest_id: UUID | None = None
    status: str | None = None
    post_count: int = 0
    requires_email: bool = False
    created: bool = False
    guest: GuestSnapshot | None = None
    error: str | None = None
    error_kind: ResolutionErrorKind | None = None

    @property
    def ok(self) -> bool:
        return self.error_kind is None

    @classmethod
    def not_ready(cls) -> "ResolutionResult":
        return cls(error="Fingerprint not ready", error_kind=ResolutionErrorKind.NOT_READY)

    @classmethod
    def failed(cls, message: str) -> "ResolutionResult":
        return cls(error=message, error_kind=ResolutionErrorKind.PERSISTENCE_FAILURE)


class IdentityResolver:
    """Creates or refreshes the guest for a fingerprint."""

    def __init__(
        self,
        store: GuestStore,
        enrichment: EnrichmentSource,
        durable_store: KeyValueStore,
        session_store: KeyValueStore,
        security_logger: SecurityLogger | None = None,
        dispatcher: BestEffortDispatcher | None = None,
    ):
        self.store = store
        self.enrichment = enrichment
        self.durable_store = durable_store
        self.session_tokens = SessionTokenIssuer(session_store)
        self.security_logger = security_logger
        self.dispatcher = dispatcher or BestEffortDispatcher()

    async def _fetch_enrichment(self) -> NetworkEnrichment | None:
        try:
            return await self.enrichment.fetch()
        except Exception as e:
            logger.warning(f"Network enrichment unavailable: {e}")
            return None

    async def _lookup(self, fingerprint: str) -> GuestSnapshot | None:
        cached_id = await self.durable_store.get(guest_cache_key(fingerprint))
        if cached_id:
            try:
                guest = await self.store.get(UUID(cached_id))
            except ValueError:
                logger.warning(f"Discarding malformed cached guest id {cached_id!r}")
                guest = None
            if guest is not None and guest.fingerprint == fingerprint:
                return guest
            await self.durable_store.remove(guest_cache_key(fingerprint))
        return await self.store.get_by_fingerprint(fingerprint)

    def _new_guest_values(
        self,
        session_id: str,
        signature: DeviceSignature | None,
        email: str | None,
        enrichment: NetworkEnrichment | None,
    ) -> dict[str, Any]:
        now = utcnow()
        values: dict[str, Any] = {
            "session_id": session_id,
            "email": email or None,
            "device_info": signature.device_info() if signature else {},
            "flags": [NEW_GUEST_FLAG],
            "post_count": 0,
            "status": "active",
            "trust_score": DEFAULT_TRUST_SCORE,
            "first_seen_at": now,
            "last_seen_at": now,
        }
        values.update((enrichment or NetworkEnrichment()).guest_fields())
        return values

    def _update_values(
        self,
        guest: GuestSnapshot,
        session_id: str,
        email: str | None,
        enrichment: NetworkEnrichment | None,
    ) -> dict[str, Any]:
        changes: dict[str, Any] = {"last_seen_at": utcnow(), "session_id": session_id}
        if email and not guest.email:
            changes["email"] = email
        # Refresh network info every visit; the first one may have had none
        if enrichment is not None:
            changes.update(enrichment.guest_fields())
        return changes

    async def resolve(
        self,
        fingerprint: str,
        signature: DeviceSignature | None = None,
        email: str | None = None,
    ) -> ResolutionResult:
        """Resolve the guest for a fingerprint, creating it when absent.

        Args:
            fingerprint: FingerprintHash; empty means not computed yet
            signature: DeviceSignature stored on newly created guests
            email: Email the visitor supplied, if any

        Returns:
            ResolutionResult; check ``ok`` before using ``guest_id``
        """
        if not fingerprint:
            return ResolutionResult.not_ready()

        session_id = await self.session_tokens.get_or_create()

        try:
            existing, enrichment = await asyncio.gather(
                self._lookup(fingerprint), self._fetch_enrichment()
            )

            created = False
            if existing is None:
                guest, created = await self.store.insert_or_get(
                    fingerprint, self._new_guest_values(session_id, signature, email, enrichment)
                )
            else:
                guest = existing

            if not created:
                changes = self._update_values(guest, session_id, email, enrichment)
                await self.store.update(guest.id, changes)
                if "email" in changes:
                    guest.email = changes["email"]
        except GuestStoreError as e:
            logger.error(f"Guest resolution failed for {fingerprint}: {e}")
            return ResolutionResult.failed(str(e))

        await self.durable_store.set(guest_cache_key(fingerprint), str(guest.id))

        if self.security_logger is not None:
            self.dispatcher.dispatch(
                f"security-log-{guest.id}",
                self.security_logger.log_resolution(guest.id, enrichment),
            )

        gated = requires_email(guest.post_count, guest.email_verified)
        logger.info(
            f"Guest state: guest_id={guest.id} created={created} post_count={guest.post_count} "
            f"requires_email={gated} status={guest.status}"
        )
        return ResolutionResult(
            guest_id=guest.id,
            status=guest.status,
            post_count=guest.post_count,
            requires_email=gated,
            created=created,
            guest=guest,
        )
