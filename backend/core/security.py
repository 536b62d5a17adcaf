"""Identity resolution.

Authentication itself belongs to the upstream identity provider; this module
only reads the identifiers it forwards. Every client sends a stable device id,
and signed-in clients additionally carry the provider's user id.
"""
from dataclasses import dataclass

from fastapi import Header

DEVICE_ID_HEADER = "X-Device-Id"
USER_ID_HEADER = "X-User-Id"

ANONYMOUS_DEVICE_ID = "anonymous"


@dataclass(frozen=True, slots=True)
class UserIdentity:
    """Anonymous device-scoped identity, optionally paired with an account id."""
    device_id: str = ANONYMOUS_DEVICE_ID
    user_id: str | None = None

    @property
    def is_authenticated(self) -> bool:
        return bool(self.user_id)


def resolve_identity(device_id: str | None, user_id: str | None) -> UserIdentity:
    """Build the identity for a request from its raw header values."""
    device = (device_id or "").strip() or ANONYMOUS_DEVICE_ID
    user = (user_id or "").strip() or None
    return UserIdentity(device_id=device, user_id=user)


def get_current_identity(
    device_id: str | None = Header(None, alias=DEVICE_ID_HEADER),
    user_id: str | None = Header(None, alias=USER_ID_HEADER),
) -> UserIdentity:
    """FastAPI dependency reading the identity headers."""
    return resolve_identity(device_id, user_id)
