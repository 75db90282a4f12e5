from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from tokenward.logging import get_logger
from tokenward.service.audit import AuditSink, LoggingAuditSink, emit_safely
from tokenward.service.codec import ClaimCodec, CodecError
from tokenward.service.errors import translate_store_errors
from tokenward.service.issuer import active_sessions
from tokenward.storage.common import TokenStore
from tokenward.storage.errors import StoreUnavailable
from tokenward.storage.models import RevokedTokenMarker, SessionInfo

logger = get_logger(__name__)


class RevocationService:
    """Logout, sign-out-everywhere and session listing over the token store.

    Revocation is idempotent: revoking something already revoked, expired or
    unknown is a quiet no-op rather than an error.
    """

    def __init__(
        self,
        store: TokenStore,
        codec: ClaimCodec,
        *,
        audit: Optional[AuditSink] = None,
    ) -> None:
        self.store = store
        self.codec = codec
        self.audit = audit or LoggingAuditSink()
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _decode_quietly(self, token: str) -> Optional[Dict[str, Any]]:
        try:
            return self.codec.decode(token)
        except CodecError as exc:
            self.logger.debug("token_decode_failed", reason=exc.reason)
            return None

    def revoke(self, token: str) -> bool:
        """Mark a refresh token revoked. Access tokens and bad input are ignored.

        Returns True when a new revocation marker was recorded.
        """
        claims = self._decode_quietly(token)
        if not claims or claims.get("typ") != "refresh" or not claims.get("jti"):
            return False
        marker = RevokedTokenMarker(
            jti=claims["jti"],
            user_id=claims.get("sub", ""),
            revoked_at=self._now(),
            expires_at=datetime.fromtimestamp(int(claims["exp"]), tz=timezone.utc),
            reason="logout",
        )
        with translate_store_errors("revoke"):
            added = self.store.add_revoked_marker(marker)
        if added:
            self.logger.info("refresh_token_revoked", user_id=marker.user_id, jti=marker.jti)
        return added

    def revoke_all_user_tokens(self, user_id: str) -> int:
        """Revoke every family of the user and drop all of their refresh records."""
        now = self._now()
        with translate_store_errors("revoke_all_user_tokens"):
            families_revoked = 0
            for family in self.store.list_user_families(user_id):
                if self.store.revoke_family(family.family_id, now):
                    families_revoked += 1
            deleted = self.store.delete_user_tokens(user_id)
        self.logger.info(
            "user_tokens_revoked",
            user_id=user_id,
            tokens_deleted=deleted,
            families_revoked=families_revoked,
        )
        emit_safely(
            self.audit,
            "tokens_revoked_all",
            user_id=user_id,
            tokens_deleted=deleted,
            families_revoked=families_revoked,
        )
        return deleted

    def revoke_other_sessions(self, user_id: str, keep_jti: str) -> int:
        now = self._now()
        revoked = 0
        with translate_store_errors("revoke_other_sessions"):
            for record in self.store.list_user_tokens(user_id):
                if record.id == keep_jti:
                    continue
                marker = RevokedTokenMarker(
                    jti=record.id,
                    user_id=user_id,
                    revoked_at=now,
                    expires_at=record.expires_at,
                    reason="revoke_other_sessions",
                )
                if self.store.add_revoked_marker(marker):
                    revoked += 1
        self.logger.info(
            "other_sessions_revoked", user_id=user_id, keep_jti=keep_jti, revoked=revoked
        )
        emit_safely(
            self.audit,
            "other_sessions_revoked",
            user_id=user_id,
            keep_jti=keep_jti,
            tokens_revoked=revoked,
        )
        return revoked

    def revoke_family(self, family_id: str, reason: str = "admin") -> bool:
        with translate_store_errors("revoke_family"):
            changed = self.store.revoke_family(family_id, self._now())
        if changed:
            self.logger.warning("token_family_revoked", family_id=family_id, reason=reason)
            emit_safely(
                self.audit,
                "token_family_revoked",
                severity="warning",
                family_id=family_id,
                reason=reason,
            )
        return changed

    def list_sessions(self, user_id: str) -> List[SessionInfo]:
        """Active sessions of the user, newest first."""
        with translate_store_errors("list_sessions"):
            records = active_sessions(self.store, user_id, self._now())
        records.sort(key=lambda record: record.created_at, reverse=True)
        return [SessionInfo.from_record(record) for record in records]

    def valid(self, token: str) -> bool:
        claims = self._decode_quietly(token)
        if not claims:
            return False
        family_id = claims.get("fam")
        if not family_id:
            return False
        token_type = claims.get("typ")
        try:
            if self.store.is_family_revoked(family_id):
                return False
            if token_type == "access":
                return True
            if token_type == "refresh":
                jti = claims.get("jti")
                return bool(jti) and not self.store.is_token_revoked(jti)
        except StoreUnavailable as exc:
            # Fail closed: an unverifiable token is not a valid token
            self.logger.warning(
                "token_validation_store_unavailable", family_id=family_id, error=str(exc)
            )
            return False
        return False


__all__ = ["RevocationService"]
