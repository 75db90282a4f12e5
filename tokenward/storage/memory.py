from __future__ import annotations

import contextlib
import threading
import uuid
import zlib
from dataclasses import replace
from datetime import datetime
from typing import Dict, Iterator, List, Optional, Set

from tokenward.logging import get_logger
from tokenward.storage.common import ensure_utc, later
from tokenward.storage.errors import StoreUnavailable
from tokenward.storage.models import (
    ReapResult,
    RefreshTokenRecord,
    RevokedTokenMarker,
    TokenFamily,
    User,
)

DEFAULT_SHARD_COUNT = 16
DEFAULT_LOCK_TIMEOUT = 0.05


class _TokenShard:
    __slots__ = ("lock", "tokens", "markers")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.tokens: Dict[str, RefreshTokenRecord] = {}
        # A marker lives in the same shard as the record it revokes
        self.markers: Dict[str, RevokedTokenMarker] = {}


class _FamilyShard:
    __slots__ = ("lock", "families")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.families: Dict[str, TokenFamily] = {}


class _IndexShard:
    __slots__ = ("lock", "user_tokens", "user_families")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        # dict keys keep insertion order, which breaks created_at ties
        self.user_tokens: Dict[str, Dict[str, None]] = {}
        self.user_families: Dict[str, Set[str]] = {}


class MemoryTokenStore:
    """In-process token store partitioned into independently locked shards.

    Records, markers and families are keyed by jti/family id and spread over
    ``shard_count`` shards by CRC32 of the key. User-scoped lookups go through
    secondary indexes sharded by user id. No method holds more than one lock
    at a time, so there is no lock ordering to get wrong.
    """

    def __init__(
        self,
        *,
        shard_count: int = DEFAULT_SHARD_COUNT,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
    ) -> None:
        if shard_count <= 0:
            raise ValueError("shard_count must be positive")
        self.logger = get_logger(__name__)
        self.shard_count = shard_count
        self.lock_timeout = lock_timeout
        self._token_shards = [_TokenShard() for _ in range(shard_count)]
        self._family_shards = [_FamilyShard() for _ in range(shard_count)]
        self._index_shards = [_IndexShard() for _ in range(shard_count)]

    def _slot(self, key: str) -> int:
        return zlib.crc32(key.encode("utf-8")) % self.shard_count

    def _token_shard(self, jti: str) -> _TokenShard:
        return self._token_shards[self._slot(jti)]

    def _family_shard(self, family_id: str) -> _FamilyShard:
        return self._family_shards[self._slot(family_id)]

    def _index_shard(self, user_id: str) -> _IndexShard:
        return self._index_shards[self._slot(user_id)]

    @contextlib.contextmanager
    def _locked(self, lock: threading.Lock, key: str) -> Iterator[None]:
        if not lock.acquire(timeout=self.lock_timeout):
            self.logger.warning("token_store_lock_timeout", key=key)
            raise StoreUnavailable("token store lock timed out", {"key": key})
        try:
            yield
        finally:
            lock.release()

    # -- refresh token records -------------------------------------------

    def save_refresh_token(self, record: RefreshTokenRecord) -> None:
        stored = replace(
            record,
            expires_at=ensure_utc(record.expires_at),
            created_at=ensure_utc(record.created_at),
        )
        shard = self._token_shard(record.id)
        with self._locked(shard.lock, record.id):
            shard.tokens[record.id] = stored
        index = self._index_shard(record.user_id)
        with self._locked(index.lock, record.user_id):
            index.user_tokens.setdefault(record.user_id, {})[record.id] = None

    def get_refresh_token(self, jti: str) -> Optional[RefreshTokenRecord]:
        shard = self._token_shard(jti)
        with self._locked(shard.lock, jti):
            record = shard.tokens.get(jti)
            return replace(record) if record else None

    def mark_used(self, jti: str, used_at: datetime) -> bool:
        shard = self._token_shard(jti)
        with self._locked(shard.lock, jti):
            record = shard.tokens.get(jti)
            if record is None or record.used:
                return False
            record.used = True
            record.used_at = ensure_utc(used_at)
            return True

    def delete_refresh_token(self, jti: str) -> bool:
        shard = self._token_shard(jti)
        with self._locked(shard.lock, jti):
            record = shard.tokens.pop(jti, None)
        if record is None:
            return False
        self._unindex_token(record.user_id, jti)
        return True

    def _unindex_token(self, user_id: str, jti: str) -> None:
        index = self._index_shard(user_id)
        with self._locked(index.lock, user_id):
            jtis = index.user_tokens.get(user_id)
            if jtis is None:
                return
            jtis.pop(jti, None)
            if not jtis:
                index.user_tokens.pop(user_id, None)

    def _user_jtis(self, user_id: str) -> List[str]:
        index = self._index_shard(user_id)
        with self._locked(index.lock, user_id):
            return list(index.user_tokens.get(user_id, {}))

    def list_user_tokens(self, user_id: str) -> List[RefreshTokenRecord]:
        records = []
        for jti in self._user_jtis(user_id):
            record = self.get_refresh_token(jti)
            if record is not None:
                records.append(record)
        return records

    def delete_user_tokens(self, user_id: str) -> int:
        index = self._index_shard(user_id)
        with self._locked(index.lock, user_id):
            jtis = list(index.user_tokens.pop(user_id, {}))
        deleted = 0
        for jti in jtis:
            shard = self._token_shard(jti)
            with self._locked(shard.lock, jti):
                if shard.tokens.pop(jti, None) is not None:
                    deleted += 1
        return deleted

    # -- families ----------------------------------------------------------

    def save_family(self, family: TokenFamily) -> TokenFamily:
        shard = self._family_shard(family.family_id)
        expires_at = ensure_utc(family.expires_at) if family.expires_at else None
        with self._locked(shard.lock, family.family_id):
            existing = shard.families.get(family.family_id)
            if existing is None:
                existing = replace(
                    family,
                    created_at=ensure_utc(family.created_at),
                    expires_at=expires_at,
                )
                shard.families[family.family_id] = existing
                created = True
            else:
                existing.expires_at = later(existing.expires_at, expires_at)
                created = False
            saved = replace(existing)
        if created:
            index = self._index_shard(family.user_id)
            with self._locked(index.lock, family.user_id):
                index.user_families.setdefault(family.user_id, set()).add(
                    family.family_id
                )
        return saved

    def get_family(self, family_id: str) -> Optional[TokenFamily]:
        shard = self._family_shard(family_id)
        with self._locked(shard.lock, family_id):
            family = shard.families.get(family_id)
            return replace(family) if family else None

    def revoke_family(self, family_id: str, revoked_at: datetime) -> bool:
        shard = self._family_shard(family_id)
        with self._locked(shard.lock, family_id):
            family = shard.families.get(family_id)
            if family is None or family.revoked:
                return False
            family.revoked = True
            family.revoked_at = ensure_utc(revoked_at)
            return True

    def is_family_revoked(self, family_id: str) -> bool:
        shard = self._family_shard(family_id)
        with self._locked(shard.lock, family_id):
            family = shard.families.get(family_id)
            return bool(family and family.revoked)

    def list_user_families(self, user_id: str) -> List[TokenFamily]:
        index = self._index_shard(user_id)
        with self._locked(index.lock, user_id):
            family_ids = list(index.user_families.get(user_id, ()))
        families = []
        for family_id in family_ids:
            family = self.get_family(family_id)
            if family is not None:
                families.append(family)
        return families

    # -- revocation markers -----------------------------------------------

    def add_revoked_marker(self, marker: RevokedTokenMarker) -> bool:
        shard = self._token_shard(marker.jti)
        with self._locked(shard.lock, marker.jti):
            if marker.jti in shard.markers:
                return False
            shard.markers[marker.jti] = replace(
                marker,
                revoked_at=ensure_utc(marker.revoked_at),
                expires_at=ensure_utc(marker.expires_at),
            )
            return True

    def is_token_revoked(self, jti: str) -> bool:
        shard = self._token_shard(jti)
        with self._locked(shard.lock, jti):
            return jti in shard.markers

    # -- expiry ------------------------------------------------------------

    def delete_expired(self, cutoff: datetime) -> ReapResult:
        """Delete everything that expired at or before ``cutoff``.

        Each shard is locked only while it is scanned, so concurrent callers
        working on other shards are never blocked by a sweep. Families are
        dropped once their latest refresh expiry has passed, at which point
        every token in them has already been swept.
        """
        cutoff = ensure_utc(cutoff)
        result = ReapResult()
        unindex: List[tuple[str, str]] = []
        for shard in self._token_shards:
            with self._locked(shard.lock, "sweep"):
                expired = [
                    record
                    for record in shard.tokens.values()
                    if record.expires_at <= cutoff
                ]
                for record in expired:
                    del shard.tokens[record.id]
                    unindex.append((record.user_id, record.id))
                    if shard.markers.pop(record.id, None) is not None:
                        result.markers += 1
                result.tokens += len(expired)
                stale_markers = [
                    jti
                    for jti, marker in shard.markers.items()
                    if marker.expires_at <= cutoff
                ]
                for jti in stale_markers:
                    del shard.markers[jti]
                result.markers += len(stale_markers)
        for user_id, jti in unindex:
            self._unindex_token(user_id, jti)

        dropped_families: List[TokenFamily] = []
        for shard in self._family_shards:
            with self._locked(shard.lock, "sweep"):
                expired_families = [
                    family
                    for family in shard.families.values()
                    if family.expires_at is not None and family.expires_at <= cutoff
                ]
                for family in expired_families:
                    del shard.families[family.family_id]
                dropped_families.extend(expired_families)
        for family in dropped_families:
            index = self._index_shard(family.user_id)
            with self._locked(index.lock, family.user_id):
                family_ids = index.user_families.get(family.user_id)
                if family_ids is not None:
                    family_ids.discard(family.family_id)
                    if not family_ids:
                        index.user_families.pop(family.user_id, None)
        result.families = len(dropped_families)
        return result


class MemoryUserDirectory:
    """Minimal in-memory identity lookup for development and tests."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.users: Dict[str, User] = {}

    def create_user(
        self,
        user_id: Optional[str] = None,
        *,
        role: str = "user",
        email: Optional[str] = None,
        is_active: bool = True,
    ) -> User:
        user = User(
            id=user_id or str(uuid.uuid4()),
            role=role,
            email=email,
            is_active=is_active,
        )
        with self._lock:
            self.users[user.id] = user
        return user

    def find_user(self, user_id: str) -> Optional[User]:
        with self._lock:
            user = self.users.get(user_id)
        if user is None or not user.is_active:
            return None
        return user

    def delete_user(self, user_id: str) -> bool:
        with self._lock:
            return self.users.pop(user_id, None) is not None


__all__ = [
    "MemoryTokenStore",
    "MemoryUserDirectory",
    "DEFAULT_SHARD_COUNT",
    "DEFAULT_LOCK_TIMEOUT",
]
