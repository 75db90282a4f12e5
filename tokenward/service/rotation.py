"""Refresh token rotation with reuse detection.

A refresh token can be exchanged exactly once. The exchange runs an ordered
chain of checks and the first failing check decides the outcome. Presenting
an already redeemed token is treated as theft: the whole family is revoked so
that neither the attacker nor the legitimate holder can continue the lineage.
"""

from __future__ import annotations

import asyncio
import inspect
from datetime import datetime, timezone
from typing import Any, Dict, NoReturn, Optional, Tuple

from tokenward.config import Settings
from tokenward.logging import get_logger
from tokenward.service.audit import AuditSink, LoggingAuditSink, emit_safely
from tokenward.service.codec import ClaimCodec, CodecError
from tokenward.service.errors import (
    DeviceMismatchError,
    FamilyRevokedError,
    InvalidTokenError,
    TokenNotFoundError,
    TokenReusedError,
    TokenRevokedError,
    UnavailableError,
    UserNotFoundError,
    WrongTokenTypeError,
    translate_store_errors,
)
from tokenward.service.fingerprint import DeviceInfo
from tokenward.service.issuer import DeviceInput, TokenIssuer
from tokenward.storage.common import TokenStore, UserDirectory
from tokenward.storage.models import RefreshTokenRecord, TokenPair, User

logger = get_logger(__name__)


class RotationProtocol:
    def __init__(
        self,
        store: TokenStore,
        codec: ClaimCodec,
        issuer: TokenIssuer,
        identity: UserDirectory,
        settings: Settings,
        *,
        audit: Optional[AuditSink] = None,
    ) -> None:
        self.store = store
        self.codec = codec
        self.issuer = issuer
        self.identity = identity
        self.settings = settings
        self.audit = audit or LoggingAuditSink()
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def refresh(
        self, refresh_token: str, device_info: DeviceInput = None
    ) -> TokenPair:
        """Exchange a refresh token for a new pair in the same family.

        Store round trips run in worker threads so a slow Redis or a contended
        shard lock never stalls the event loop.
        """
        try:
            claims = self.codec.decode(refresh_token)
        except CodecError as exc:
            self.logger.info("refresh_token_rejected", reason=exc.reason)
            raise InvalidTokenError(
                "refresh token could not be decoded", detail={"reason": exc.reason}
            ) from exc

        if claims.get("typ") != "refresh":
            raise WrongTokenTypeError(
                "expected a refresh token", detail={"typ": claims.get("typ")}
            )

        jti = claims.get("jti")
        record = None
        if jti:
            with translate_store_errors("refresh"):
                record = await asyncio.to_thread(self.store.get_refresh_token, jti)
        if record is None:
            raise TokenNotFoundError("refresh token is not recognized")

        if record.used:
            await self._contain_reuse(record, stage="presented")

        with translate_store_errors("refresh"):
            family_revoked, token_revoked = await asyncio.to_thread(
                self._revocation_state, record
            )
        if family_revoked:
            self._reject(
                FamilyRevokedError("token family has been revoked"),
                "refresh_family_revoked",
                record,
            )
        if token_revoked:
            self._reject(
                TokenRevokedError("refresh token has been revoked"),
                "refresh_token_revoked",
                record,
            )

        device = DeviceInfo.coerce(device_info)
        if device.fingerprint != record.device_fingerprint:
            # The token stays redeemable from the device it was bound to
            self._reject(
                DeviceMismatchError("device fingerprint mismatch"),
                "device_mismatch",
                record,
            )

        user = await self._resolve_user(record.user_id)
        if user is None:
            self.logger.warning(
                "refresh_user_not_found", user_id=record.user_id, jti=record.id
            )
            raise UserNotFoundError("token subject no longer exists")

        with translate_store_errors("refresh"):
            redeemed = await asyncio.to_thread(
                self.store.mark_used, record.id, self._now()
            )
            if not redeemed:
                current = await asyncio.to_thread(
                    self.store.get_refresh_token, record.id
                )
        if not redeemed:
            if current is None:
                raise TokenNotFoundError("refresh token is not recognized")
            # A concurrent exchange won the compare-and-swap
            await self._contain_reuse(record, stage="concurrent")

        pair = await asyncio.to_thread(
            self.issuer.issue,
            user,
            device,
            session_name=record.session_name,
            family_id=record.family_id,
        )
        self.logger.info(
            "refresh_token_rotated",
            user_id=user.id,
            family_id=record.family_id,
            previous_jti=record.id,
            jti=pair.session_id,
        )
        return pair

    def _revocation_state(self, record: RefreshTokenRecord) -> Tuple[bool, bool]:
        return (
            self.store.is_family_revoked(record.family_id),
            self.store.is_token_revoked(record.id),
        )

    async def _resolve_user(self, user_id: str) -> Optional[User]:
        timeout = self.settings.identity_timeout_ms / 1000
        try:
            return await asyncio.wait_for(self._lookup_user(user_id), timeout)
        except asyncio.TimeoutError as exc:
            self.logger.warning(
                "identity_lookup_timeout", user_id=user_id, timeout_seconds=timeout
            )
            raise UnavailableError(
                "identity lookup timed out", detail={"operation": "find_user"}
            ) from exc

    async def _lookup_user(self, user_id: str) -> Optional[User]:
        finder = self.identity.find_user
        if inspect.iscoroutinefunction(finder):
            return await finder(user_id)
        user = await asyncio.to_thread(finder, user_id)
        # Sync wrappers around async directories hand back an awaitable
        if inspect.isawaitable(user):
            user = await user
        return user

    async def _contain_reuse(
        self, record: RefreshTokenRecord, *, stage: str
    ) -> NoReturn:
        with translate_store_errors("revoke_family"):
            newly_revoked = await asyncio.to_thread(
                self.store.revoke_family, record.family_id, self._now()
            )
        self.logger.error(
            "refresh_token_reuse_detected",
            user_id=record.user_id,
            family_id=record.family_id,
            jti=record.id,
            stage=stage,
            family_newly_revoked=newly_revoked,
        )
        emit_safely(
            self.audit,
            "token_reuse_detected",
            severity="critical",
            user_id=record.user_id,
            family_id=record.family_id,
            jti=record.id,
            stage=stage,
        )
        raise TokenReusedError(
            "refresh token was already used", detail={"family_id": record.family_id}
        )

    def _reject(
        self,
        error: Exception,
        event: str,
        record: RefreshTokenRecord,
    ) -> NoReturn:
        fields: Dict[str, Any] = {
            "user_id": record.user_id,
            "family_id": record.family_id,
            "jti": record.id,
        }
        self.logger.warning(event, **fields)
        emit_safely(self.audit, event, severity="warning", **fields)
        raise error


__all__ = ["RotationProtocol"]
