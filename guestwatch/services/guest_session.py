"""Client-side guest session.

Holds the fingerprint, the resolved guest and the last error for one visitor,
and exposes the gating decisions a posting UI needs. A session is built once
per visitor and used from a single task.
"""

import logging
from uuid import UUID

from guestwatch.config import Settings
from guestwatch.services.fingerprint import DeviceEnvironment, Fingerprint, derive_fingerprint
from guestwatch.services.guest_store import GuestSnapshot, GuestStore, GuestStoreError
from guestwatch.services.identity_resolver import IdentityResolver, ResolutionResult, requires_email
from guestwatch.services.kv_store import KeyValueStore, MemoryKeyValueStore, guest_cache_key
from guestwatch.services.network_enrichment import HttpEnrichmentClient

logger = logging.getLogger(__name__)


class GuestSession:
    def __init__(
        self,
        resolver: IdentityResolver,
        store: GuestStore,
        durable_store: KeyValueStore,
        environment: DeviceEnvironment,
    ):
        self.resolver = resolver
        self.store = store
        self.durable_store = durable_store
        self.environment = environment

        self._fingerprint: Fingerprint | None = None
        self._guest: GuestSnapshot | None = None
        self._error: str | None = None
        self.last_result: ResolutionResult | None = None

    @classmethod
    def create(
        cls,
        store: GuestStore,
        durable_store: KeyValueStore,
        settings: Settings,
        environment: DeviceEnvironment | None = None,
    ) -> "GuestSession":
        """Build a session that enriches through the configured ``/api/guest-init``.

        The environment defaults to the local machine as detected by ``detect_local()``.
        """
        enrichment = HttpEnrichmentClient(
            settings.enrichment_url, timeout=settings.enrichment_timeout_seconds
        )
        resolver = IdentityResolver(
            store=store,
            enrichment=enrichment,
            durable_store=durable_store,
            session_store=MemoryKeyValueStore(),
        )
        return cls(resolver, store, durable_store, environment or DeviceEnvironment.detect_local())

    @property
    def fingerprint(self) -> str | None:
        return self._fingerprint.hash if self._fingerprint else None

    @property
    def guest(self) -> GuestSnapshot | None:
        return self._guest

    @property
    def guest_id(self) -> UUID | None:
        return self._guest.id if self._guest else None

    @property
    def error(self) -> str | None:
        return self._error

    @property
    def is_blocked(self) -> bool:
        return self._guest is not None and self._guest.status == "blocked"

    @property
    def post_count(self) -> int:
        return self._guest.post_count if self._guest else 0

    @property
    def requires_email(self) -> bool:
        if self._guest is None:
            return False
        return requires_email(self._guest.post_count, self._guest.email_verified)

    async def initialize(self) -> GuestSnapshot | None:
        """Derive the fingerprint and load an already-known guest.

        A guest id cached for this fingerprint is fetched directly; nothing
        is created here.
        """
        self._fingerprint = derive_fingerprint(self.environment)

        cached_id = await self.durable_store.get(guest_cache_key(self._fingerprint.hash))
        if not cached_id:
            return None

        try:
            guest = await self.store.get(UUID(cached_id))
        except (ValueError, GuestStoreError) as e:
            logger.warning(f"Could not load cached guest {cached_id}: {e}")
            return None

        if guest is not None and guest.fingerprint == self._fingerprint.hash:
            self._guest = guest
        return self._guest

    async def create_or_update_guest(self, email: str | None = None) -> ResolutionResult:
        """Resolve this visitor's guest, creating it on the first visit."""
        if self._fingerprint is None:
            result = ResolutionResult.not_ready()
        else:
            result = await self.resolver.resolve(
                self._fingerprint.hash, self._fingerprint.signature, email
            )

        self.last_result = result
        if result.ok:
            self._guest = result.guest
            self._error = None
        else:
            self._error = result.error
        return result

    async def refresh_guest_data(self) -> GuestSnapshot | None:
        """Re-read the guest, e.g. after a post or a moderation change."""
        if self._guest is None:
            return None
        try:
            guest = await self.store.get(self._guest.id)
        except GuestStoreError as e:
            logger.warning(f"Error refreshing guest data: {e}")
            self._error = str(e)
            return self._guest
        if guest is not None:
            self._guest = guest
        return self._guest
