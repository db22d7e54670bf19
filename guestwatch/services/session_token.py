"""Per-session opaque token, independent of the device fingerprint."""

import secrets
import string
import time

from guestwatch.services.kv_store import KeyValueStore

SESSION_TOKEN_KEY = "guest_session_id"

_BASE36 = string.digits + string.ascii_lowercase


def to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def new_session_token() -> str:
    """``{base36 ms timestamp}-{9 random base36 chars}``."""
    millis = time.time_ns() // 1_000_000
    suffix = "".join(secrets.choice(_BASE36) for _ in range(9))
    return f"{to_base36(millis)}-{suffix}"


class SessionTokenIssuer:
    """Hands out the session token, creating it lazily on first need."""

    def __init__(self, store: KeyValueStore):
        self.store = store

    async def get_or_create(self) -> str:
        token = await self.store.get(SESSION_TOKEN_KEY)
        if token:
            return token
        token = new_session_token()
        await self.store.set(SESSION_TOKEN_KEY, token)
        return token
