from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Union

FINGERPRINT_LENGTH = 16


@dataclass(frozen=True)
class DeviceInfo:
    """Client context a refresh token is bound to."""

    user_agent: str = ""
    device_id: str = ""

    @classmethod
    def coerce(
        cls, value: Union["DeviceInfo", Mapping[str, Any], None]
    ) -> "DeviceInfo":
        if value is None:
            return cls()
        if isinstance(value, DeviceInfo):
            return value
        return cls(
            user_agent=str(value.get("user_agent") or ""),
            device_id=str(value.get("device_id") or ""),
        )

    @property
    def fingerprint(self) -> str:
        return compute_device_fingerprint(self.user_agent, self.device_id)


def compute_device_fingerprint(
    user_agent: Optional[str] = None, device_id: Optional[str] = None
) -> str:
    """Hash ``user_agent|device_id`` into a short value used only for equality checks."""

    data = f"{user_agent or ''}|{device_id or ''}"
    return hashlib.sha256(data.encode("utf-8")).hexdigest()[:FINGERPRINT_LENGTH]


__all__ = ["DeviceInfo", "compute_device_fingerprint", "FINGERPRINT_LENGTH"]
