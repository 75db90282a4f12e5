from __future__ import annotations

from typing import List, Optional

from tokenward.config import Settings
from tokenward.logging import token_context
from tokenward.service.audit import AuditSink, LoggingAuditSink
from tokenward.service.codec import ClaimCodec
from tokenward.service.issuer import DeviceInput, TokenIssuer
from tokenward.service.revocation import RevocationService
from tokenward.service.rotation import RotationProtocol
from tokenward.storage.common import TokenStore, UserDirectory
from tokenward.storage.models import SessionInfo, TokenPair, User


class TokenManager:
    """Single entry point for issuing, rotating and revoking tokens.

    Issuer, rotation and revocation share one store, one codec and one audit
    sink. ``refresh`` is a coroutine because it may wait on the identity
    lookup; everything else is synchronous.
    """

    def __init__(
        self,
        store: TokenStore,
        codec: ClaimCodec,
        identity: UserDirectory,
        settings: Settings,
        *,
        audit: Optional[AuditSink] = None,
    ) -> None:
        self.store = store
        self.codec = codec
        self.identity = identity
        self.settings = settings
        self.audit = audit or LoggingAuditSink()
        self.issuer = TokenIssuer(store, codec, settings, audit=self.audit)
        self.rotation = RotationProtocol(
            store, codec, self.issuer, identity, settings, audit=self.audit
        )
        self.revocation = RevocationService(store, codec, audit=self.audit)

    def issue(
        self,
        user: User,
        device_info: DeviceInput = None,
        *,
        session_name: str = "default",
        remember_me: bool = False,
    ) -> TokenPair:
        with token_context(operation="issue", user_id=user.id):
            return self.issuer.issue(
                user, device_info, session_name=session_name, remember_me=remember_me
            )

    async def refresh(
        self, refresh_token: str, device_info: DeviceInput = None
    ) -> TokenPair:
        with token_context(operation="refresh"):
            return await self.rotation.refresh(refresh_token, device_info)

    def revoke(self, token: str) -> bool:
        with token_context(operation="revoke"):
            return self.revocation.revoke(token)

    def revoke_all_user_tokens(self, user_id: str) -> int:
        with token_context(operation="revoke_all_user_tokens", user_id=user_id):
            return self.revocation.revoke_all_user_tokens(user_id)

    def revoke_other_sessions(self, user_id: str, keep_jti: str) -> int:
        with token_context(operation="revoke_other_sessions", user_id=user_id):
            return self.revocation.revoke_other_sessions(user_id, keep_jti)

    def revoke_family(self, family_id: str, reason: str = "admin") -> bool:
        with token_context(operation="revoke_family", family_id=family_id):
            return self.revocation.revoke_family(family_id, reason)

    def list_sessions(self, user_id: str) -> List[SessionInfo]:
        return self.revocation.list_sessions(user_id)

    def valid(self, token: str) -> bool:
        return self.revocation.valid(token)


__all__ = ["TokenManager"]
