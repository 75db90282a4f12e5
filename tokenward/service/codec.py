from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from datetime import timedelta
from typing import Any, Dict, Optional

from tokenward.config import Settings
from tokenward.logging import get_logger

logger = get_logger(__name__)

# Claims the codec owns; callers cannot override them through encode()
_RESERVED_CLAIMS = ("iss", "aud", "iat", "exp")


class CodecError(Exception):
    """Base class for token encode/decode failures."""

    reason = "invalid"


class MalformedTokenError(CodecError):
    reason = "malformed"


class TamperedTokenError(CodecError):
    """Signature, algorithm, issuer or audience did not check out."""

    reason = "tampered"


class ExpiredTokenError(CodecError):
    reason = "expired"


class ClaimCodec:
    """HS256 JWT encoder/decoder for token claim sets."""

    algorithm = "HS256"

    def __init__(
        self,
        secret: str,
        *,
        issuer: str = "tokenward",
        audience: str = "tokenward-clients",
        leeway_seconds: int = 30,
    ) -> None:
        if not secret:
            raise ValueError("codec secret must not be empty")
        self._secret = secret.encode("utf-8")
        self.issuer = issuer
        self.audience = audience
        self.leeway_seconds = leeway_seconds

    @classmethod
    def from_settings(cls, settings: Settings) -> "ClaimCodec":
        return cls(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            leeway_seconds=settings.clock_skew_leeway_seconds,
        )

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def encode(
        self, claims: Dict[str, Any], ttl: timedelta, *, now: Optional[float] = None
    ) -> str:
        issued_at = int(now if now is not None else time.time())
        payload = {key: value for key, value in claims.items() if key not in _RESERVED_CLAIMS}
        payload.update(
            {
                "iss": self.issuer,
                "aud": self.audience,
                "iat": issued_at,
                "exp": issued_at + int(ttl.total_seconds()),
            }
        )
        header = {"alg": self.algorithm, "typ": "JWT"}
        try:
            header_enc = self._encode_segment(
                json.dumps(header, separators=(",", ":")).encode()
            )
            payload_enc = self._encode_segment(
                json.dumps(payload, separators=(",", ":"), sort_keys=True).encode()
            )
        except (TypeError, ValueError) as exc:
            raise CodecError(f"unable to serialize claims: {exc}") from exc
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def decode(self, token: str, *, now: Optional[float] = None) -> Dict[str, Any]:
        if not isinstance(token, str):
            raise MalformedTokenError("token must be a string")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise MalformedTokenError("token must have three segments") from None

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError) as exc:
            raise MalformedTokenError("unreadable token header") from exc
        # Reject alg confusion before touching the signature
        if not isinstance(header, dict) or header.get("alg") != self.algorithm:
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise TamperedTokenError("unexpected signing algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        # Compare bytes, str comparison rejects non-ASCII input with TypeError
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode("utf-8")):
            raise TamperedTokenError("signature mismatch")

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            raise MalformedTokenError("unreadable token payload") from exc
        if not isinstance(payload, dict):
            raise MalformedTokenError("token payload must be an object")

        if payload.get("iss") != self.issuer:
            raise TamperedTokenError("issuer mismatch")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            raise TamperedTokenError("audience mismatch")

        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise MalformedTokenError("token has no usable exp claim") from None
        current = now if now is not None else time.time()
        if exp_ts <= current - self.leeway_seconds:
            raise ExpiredTokenError("token has expired")
        return payload


__all__ = [
    "ClaimCodec",
    "CodecError",
    "MalformedTokenError",
    "TamperedTokenError",
    "ExpiredTokenError",
]
