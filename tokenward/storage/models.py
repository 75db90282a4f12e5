from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    role: str = "user"
    email: Optional[str] = None
    is_active: bool = True


@dataclass
class RefreshTokenRecord:
    """Server-side state for one issued refresh token.

    Everything except ``used``/``used_at`` is fixed at issuance; ``used`` only
    ever moves from False to True and the store enforces that atomically.
    """

    id: str
    user_id: str
    family_id: str
    device_fingerprint: str
    session_name: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    used: bool = False
    used_at: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


@dataclass
class TokenFamily:
    """All refresh tokens rotated from a single login."""

    family_id: str
    user_id: str
    created_at: datetime = field(default_factory=utcnow)
    # Latest refresh expiry issued in this family; bounds how long it must be kept
    expires_at: Optional[datetime] = None
    revoked: bool = False
    revoked_at: Optional[datetime] = None


@dataclass
class RevokedTokenMarker:
    jti: str
    user_id: Optional[str]
    revoked_at: datetime
    expires_at: datetime
    reason: str = "logout"


@dataclass
class SessionInfo:
    session_id: str
    session_name: str
    created_at: datetime
    expires_at: datetime
    device_fingerprint: str

    @classmethod
    def from_record(cls, record: RefreshTokenRecord) -> "SessionInfo":
        return cls(
            session_id=record.id,
            session_name=record.session_name,
            created_at=record.created_at,
            expires_at=record.expires_at,
            device_fingerprint=record.device_fingerprint,
        )

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "session_name": self.session_name,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "device_fingerprint": self.device_fingerprint,
        }


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    access_token_expires_at: datetime
    refresh_token_expires_at: datetime
    family_id: str
    session_id: str
    token_type: str = "Bearer"

    def to_dict(self) -> dict:
        """Wire representation handed back to the client."""
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "access_token_expires_at": self.access_token_expires_at.isoformat(),
            "refresh_token_expires_at": self.refresh_token_expires_at.isoformat(),
            "token_type": self.token_type,
        }


@dataclass
class ReapResult:
    tokens: int = 0
    markers: int = 0
    families: int = 0

    @property
    def total(self) -> int:
        return self.tokens + self.markers + self.families
