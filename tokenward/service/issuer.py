from __future__ import annotations

import base64
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional, Union

from tokenward.config import Settings
from tokenward.logging import get_logger
from tokenward.service.audit import AuditSink, LoggingAuditSink, emit_safely
from tokenward.service.codec import ClaimCodec, CodecError
from tokenward.service.errors import IssuanceFailedError, translate_store_errors
from tokenward.service.fingerprint import DeviceInfo
from tokenward.storage.common import TokenStore
from tokenward.storage.models import (
    RefreshTokenRecord,
    RevokedTokenMarker,
    TokenFamily,
    TokenPair,
    User,
)

logger = get_logger(__name__)

DeviceInput = Union[DeviceInfo, Mapping[str, Any], None]


def generate_id(prefix: str) -> str:
    """``prefix_`` followed by 16 random bytes in lowercase unpadded base32."""
    raw = base64.b32encode(secrets.token_bytes(16)).decode("ascii")
    return f"{prefix}_{raw.rstrip('=').lower()}"


def active_sessions(
    store: TokenStore, user_id: str, now: datetime
) -> List[RefreshTokenRecord]:
    """Records that could still be rotated: unused, unexpired and not revoked."""
    active = []
    revoked_families: Dict[str, bool] = {}
    for record in store.list_user_tokens(user_id):
        if record.used or record.is_expired(now):
            continue
        if record.family_id not in revoked_families:
            revoked_families[record.family_id] = store.is_family_revoked(
                record.family_id
            )
        if revoked_families[record.family_id]:
            continue
        if store.is_token_revoked(record.id):
            continue
        active.append(record)
    return active


class TokenIssuer:
    """Creates access/refresh pairs and records the refresh side in the store."""

    def __init__(
        self,
        store: TokenStore,
        codec: ClaimCodec,
        settings: Settings,
        *,
        audit: Optional[AuditSink] = None,
    ) -> None:
        self.store = store
        self.codec = codec
        self.settings = settings
        self.audit = audit or LoggingAuditSink()
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def access_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.access_token_ttl_minutes)

    def refresh_ttl(self, remember_me: bool = False) -> timedelta:
        days = (
            self.settings.remember_me_refresh_ttl_days
            if remember_me
            else self.settings.refresh_token_ttl_days
        )
        return timedelta(days=days)

    def issue(
        self,
        user: User,
        device_info: DeviceInput = None,
        *,
        session_name: str = "default",
        remember_me: bool = False,
        family_id: Optional[str] = None,
    ) -> TokenPair:
        device = DeviceInfo.coerce(device_info)
        new_family = family_id is None
        family_id = family_id or generate_id("fam")
        jti = generate_id("jti")
        fingerprint = device.fingerprint
        session_name = session_name or "default"

        now = self._now()
        access_ttl = self.access_ttl()
        refresh_ttl = self.refresh_ttl(remember_me)
        issued_ts = int(now.timestamp())
        # Expiry instants are derived from the same whole second the codec stamps
        issued_at = datetime.fromtimestamp(issued_ts, tz=timezone.utc)
        access_expires_at = issued_at + timedelta(seconds=int(access_ttl.total_seconds()))
        refresh_expires_at = issued_at + timedelta(seconds=int(refresh_ttl.total_seconds()))

        access_claims = {
            "typ": "access",
            "sub": user.id,
            "role": user.role or "user",
            "fam": family_id,
        }
        refresh_claims = {
            "typ": "refresh",
            "sub": user.id,
            "fam": family_id,
            "jti": jti,
            "dfp": fingerprint,
            "ses": session_name,
        }
        try:
            access_token = self.codec.encode(access_claims, access_ttl, now=issued_ts)
            refresh_token = self.codec.encode(refresh_claims, refresh_ttl, now=issued_ts)
        except CodecError as exc:
            self.logger.error(
                "token_signing_failed", user_id=user.id, family_id=family_id, error=str(exc)
            )
            raise IssuanceFailedError("token signing failed") from exc

        record = RefreshTokenRecord(
            id=jti,
            user_id=user.id,
            family_id=family_id,
            device_fingerprint=fingerprint,
            session_name=session_name,
            expires_at=refresh_expires_at,
            created_at=now,
        )
        with translate_store_errors("issue"):
            self.store.save_family(
                TokenFamily(
                    family_id=family_id,
                    user_id=user.id,
                    created_at=now,
                    expires_at=refresh_expires_at,
                )
            )
            self.store.save_refresh_token(record)

        evicted = self.enforce_session_cap(user.id)

        emit_safely(
            self.audit,
            "tokens_issued",
            user_id=user.id,
            family_id=family_id,
            jti=jti,
            session_name=session_name,
            new_family=new_family,
            remember_me=remember_me,
            evicted_sessions=evicted,
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            access_token_expires_at=access_expires_at,
            refresh_token_expires_at=refresh_expires_at,
            family_id=family_id,
            session_id=jti,
        )

    def enforce_session_cap(self, user_id: str) -> int:
        """Revoke the oldest active sessions beyond the per-user cap.

        Best effort: a failure here is logged and never fails the login.
        """
        limit = self.settings.max_sessions_per_user
        now = self._now()
        try:
            sessions = active_sessions(self.store, user_id, now)
            excess = len(sessions) - limit
            if excess <= 0:
                return 0
            sessions.sort(key=lambda record: record.created_at)
            evicted = 0
            for record in sessions[:excess]:
                if self.store.add_revoked_marker(
                    RevokedTokenMarker(
                        jti=record.id,
                        user_id=user_id,
                        revoked_at=now,
                        expires_at=record.expires_at,
                        reason="session_cap",
                    )
                ):
                    evicted += 1
            self.logger.info(
                "session_cap_enforced", user_id=user_id, limit=limit, evicted=evicted
            )
            return evicted
        except Exception as exc:
            self.logger.warning(
                "session_cap_enforcement_failed",
                user_id=user_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return 0


__all__ = ["TokenIssuer", "active_sessions", "generate_id", "DeviceInput"]
