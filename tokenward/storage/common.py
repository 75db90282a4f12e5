"""Storage contract and helpers shared by the memory and redis token stores.

Both backends implement :class:`TokenStore`; the services never reach past
this protocol, so a deployment can swap the in-process store for a shared
key-value store without touching issuance or rotation.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Awaitable, List, Optional, Protocol, Union

from tokenward.storage.models import (
    ReapResult,
    RefreshTokenRecord,
    RevokedTokenMarker,
    TokenFamily,
    User,
)


class TokenStore(Protocol):
    def save_refresh_token(self, record: RefreshTokenRecord) -> None: ...

    def get_refresh_token(self, jti: str) -> Optional[RefreshTokenRecord]: ...

    def mark_used(self, jti: str, used_at: datetime) -> bool:
        """Atomically flip ``used`` to True; return False if it already was or the record is gone."""
        ...

    def delete_refresh_token(self, jti: str) -> bool: ...

    def list_user_tokens(self, user_id: str) -> List[RefreshTokenRecord]: ...

    def delete_user_tokens(self, user_id: str) -> int: ...

    def save_family(self, family: TokenFamily) -> TokenFamily:
        """Insert the family, or extend ``expires_at`` of an existing one."""
        ...

    def get_family(self, family_id: str) -> Optional[TokenFamily]: ...

    def revoke_family(self, family_id: str, revoked_at: datetime) -> bool: ...

    def is_family_revoked(self, family_id: str) -> bool: ...

    def list_user_families(self, user_id: str) -> List[TokenFamily]: ...

    def add_revoked_marker(self, marker: RevokedTokenMarker) -> bool: ...

    def is_token_revoked(self, jti: str) -> bool: ...

    def delete_expired(self, cutoff: datetime) -> ReapResult: ...


class UserDirectory(Protocol):
    """Identity lookup. Implementations may be sync or async."""

    def find_user(self, user_id: str) -> Union[Optional[User], Awaitable[Optional[User]]]: ...


def ensure_utc(value: datetime) -> datetime:
    """Normalize naive timestamps to UTC so comparisons never mix kinds."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def serialize_datetime(value: Optional[datetime]) -> str:
    return ensure_utc(value).isoformat() if value else ""


def deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    return ensure_utc(datetime.fromisoformat(raw))


def later(current: Optional[datetime], candidate: Optional[datetime]) -> Optional[datetime]:
    if current is None:
        return candidate
    if candidate is None:
        return current
    return max(current, candidate)


__all__ = [
    "TokenStore",
    "UserDirectory",
    "ensure_utc",
    "serialize_datetime",
    "deserialize_datetime",
    "later",
]
