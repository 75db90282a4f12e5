from __future__ import annotations

import contextlib
from datetime import datetime, timedelta
from typing import Dict, Iterator, List, Optional

from redis import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from tokenward.logging import get_logger
from tokenward.storage.common import (
    deserialize_datetime,
    ensure_utc,
    serialize_datetime,
)
from tokenward.storage.errors import StoreUnavailable
from tokenward.storage.models import (
    ReapResult,
    RefreshTokenRecord,
    RevokedTokenMarker,
    TokenFamily,
)

logger = get_logger(__name__)

_SWEEP_BATCH = 500


class RedisTokenStore:
    """Token store backed by Redis, for deployments sharing state across processes.

    Records, families and markers are hashes; per-user indexes and expiry
    indexes are sorted sets. The used-flag and family-revocation transitions
    run as Lua scripts so they stay atomic across every client of the server.
    Keys also carry an absolute expiry of ``expires_at + retention`` so Redis
    drops them even if the reaper is disabled.
    """

    # Compare-and-set of the used flag: 1 = flipped, 0 = already used, -1 = missing
    _MARK_USED_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 0 then
  return -1
end
if redis.call('HGET', KEYS[1], 'used') == '1' then
  return 0
end
redis.call('HSET', KEYS[1], 'used', '1', 'used_at', ARGV[1])
return 1
"""

    _REVOKE_FAMILY_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 0 then
  return 0
end
if redis.call('HGET', KEYS[1], 'revoked') == '1' then
  return 0
end
redis.call('HSET', KEYS[1], 'revoked', '1', 'revoked_at', ARGV[1])
return 1
"""

    _SAVE_FAMILY_SCRIPT = """
local family_id = ARGV[1]
local expires_score = tonumber(ARGV[5])
if redis.call('EXISTS', KEYS[1]) == 0 then
  redis.call('HSET', KEYS[1], 'user_id', ARGV[2], 'created_at', ARGV[3],
             'expires_at', ARGV[4], 'revoked', '0', 'revoked_at', '')
  redis.call('SADD', KEYS[2], family_id)
  redis.call('ZADD', KEYS[3], expires_score, family_id)
  redis.call('EXPIREAT', KEYS[1], ARGV[6])
  return 1
end
local current = tonumber(redis.call('ZSCORE', KEYS[3], family_id) or '0')
if expires_score > current then
  redis.call('HSET', KEYS[1], 'expires_at', ARGV[4])
  redis.call('ZADD', KEYS[3], expires_score, family_id)
  redis.call('EXPIREAT', KEYS[1], ARGV[6])
end
return 0
"""

    _ADD_MARKER_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 1 then
  return 0
end
redis.call('HSET', KEYS[1], 'user_id', ARGV[1], 'revoked_at', ARGV[2],
           'expires_at', ARGV[3], 'reason', ARGV[4])
redis.call('ZADD', KEYS[2], ARGV[5], ARGV[6])
redis.call('EXPIREAT', KEYS[1], ARGV[7])
return 1
"""

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        *,
        socket_timeout: float = 0.05,
        key_prefix: str = "tokenward",
        retention_seconds: int = 300,
        client: Optional[Redis] = None,
    ) -> None:
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self.retention = timedelta(seconds=retention_seconds)
        self.client = client or Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._mark_used = self.client.register_script(self._MARK_USED_SCRIPT)
        self._revoke_family = self.client.register_script(self._REVOKE_FAMILY_SCRIPT)
        self._save_family = self.client.register_script(self._SAVE_FAMILY_SCRIPT)
        self._add_marker = self.client.register_script(self._ADD_MARKER_SCRIPT)

    # -- keys ----------------------------------------------------------------

    def _token_key(self, jti: str) -> str:
        return f"{self.key_prefix}:rt:{jti}"

    def _family_key(self, family_id: str) -> str:
        return f"{self.key_prefix}:fam:{family_id}"

    def _marker_key(self, jti: str) -> str:
        return f"{self.key_prefix}:revoked:{jti}"

    def _user_tokens_key(self, user_id: str) -> str:
        return f"{self.key_prefix}:user:{user_id}:tokens"

    def _user_families_key(self, user_id: str) -> str:
        return f"{self.key_prefix}:user:{user_id}:families"

    def _expiry_key(self, kind: str) -> str:
        return f"{self.key_prefix}:expiry:{kind}"

    def _expire_at(self, expires_at: datetime) -> int:
        return int((ensure_utc(expires_at) + self.retention).timestamp())

    @contextlib.contextmanager
    def _guard(self, operation: str) -> Iterator[None]:
        try:
            yield
        except (RedisConnectionError, RedisTimeoutError) as exc:
            logger.warning(
                "redis_token_store_unavailable", operation=operation, error=str(exc)
            )
            raise StoreUnavailable(
                "redis token store unavailable", {"operation": operation}
            ) from exc

    def verify_connection(self) -> None:
        with self._guard("ping"):
            self.client.ping()

    def close(self) -> None:
        self.client.close()

    # -- (de)serialization ---------------------------------------------------

    @staticmethod
    def _record_from_hash(jti: str, data: Dict[str, str]) -> RefreshTokenRecord:
        return RefreshTokenRecord(
            id=jti,
            user_id=data["user_id"],
            family_id=data["family_id"],
            device_fingerprint=data.get("device_fingerprint", ""),
            session_name=data.get("session_name", "default"),
            expires_at=deserialize_datetime(data["expires_at"]),
            created_at=deserialize_datetime(data["created_at"]),
            used=data.get("used") == "1",
            used_at=deserialize_datetime(data.get("used_at")),
        )

    @staticmethod
    def _family_from_hash(family_id: str, data: Dict[str, str]) -> TokenFamily:
        return TokenFamily(
            family_id=family_id,
            user_id=data["user_id"],
            created_at=deserialize_datetime(data["created_at"]),
            expires_at=deserialize_datetime(data.get("expires_at")),
            revoked=data.get("revoked") == "1",
            revoked_at=deserialize_datetime(data.get("revoked_at")),
        )

    # -- refresh token records ----------------------------------------------

    def save_refresh_token(self, record: RefreshTokenRecord) -> None:
        key = self._token_key(record.id)
        mapping = {
            "user_id": record.user_id,
            "family_id": record.family_id,
            "device_fingerprint": record.device_fingerprint,
            "session_name": record.session_name,
            "expires_at": serialize_datetime(record.expires_at),
            "created_at": serialize_datetime(record.created_at),
            "used": "1" if record.used else "0",
            "used_at": serialize_datetime(record.used_at),
        }
        with self._guard("save_refresh_token"):
            pipe = self.client.pipeline(transaction=True)
            pipe.hset(key, mapping=mapping)
            pipe.expireat(key, self._expire_at(record.expires_at))
            pipe.zadd(
                self._user_tokens_key(record.user_id),
                {record.id: ensure_utc(record.created_at).timestamp()},
            )
            pipe.zadd(
                self._expiry_key("tokens"),
                {record.id: ensure_utc(record.expires_at).timestamp()},
            )
            pipe.execute()

    def get_refresh_token(self, jti: str) -> Optional[RefreshTokenRecord]:
        with self._guard("get_refresh_token"):
            data = self.client.hgetall(self._token_key(jti))
        if not data:
            return None
        return self._record_from_hash(jti, data)

    def mark_used(self, jti: str, used_at: datetime) -> bool:
        with self._guard("mark_used"):
            outcome = self._mark_used(
                keys=[self._token_key(jti)], args=[serialize_datetime(used_at)]
            )
        return int(outcome) == 1

    def delete_refresh_token(self, jti: str) -> bool:
        key = self._token_key(jti)
        with self._guard("delete_refresh_token"):
            user_id = self.client.hget(key, "user_id")
            pipe = self.client.pipeline(transaction=True)
            pipe.delete(key)
            pipe.zrem(self._expiry_key("tokens"), jti)
            if user_id:
                pipe.zrem(self._user_tokens_key(user_id), jti)
            deleted = pipe.execute()[0]
        return bool(deleted)

    def list_user_tokens(self, user_id: str) -> List[RefreshTokenRecord]:
        with self._guard("list_user_tokens"):
            jtis = self.client.zrange(self._user_tokens_key(user_id), 0, -1)
            if not jtis:
                return []
            pipe = self.client.pipeline(transaction=False)
            for jti in jtis:
                pipe.hgetall(self._token_key(jti))
            rows = pipe.execute()
        return [
            self._record_from_hash(jti, data) for jti, data in zip(jtis, rows) if data
        ]

    def delete_user_tokens(self, user_id: str) -> int:
        index_key = self._user_tokens_key(user_id)
        with self._guard("delete_user_tokens"):
            jtis = self.client.zrange(index_key, 0, -1)
            pipe = self.client.pipeline(transaction=True)
            for jti in jtis:
                pipe.delete(self._token_key(jti))
            if jtis:
                pipe.zrem(self._expiry_key("tokens"), *jtis)
            pipe.delete(index_key)
            results = pipe.execute()
        return sum(int(result) for result in results[: len(jtis)])

    # -- families ------------------------------------------------------------

    def save_family(self, family: TokenFamily) -> TokenFamily:
        expires_at = ensure_utc(family.expires_at or family.created_at)
        with self._guard("save_family"):
            self._save_family(
                keys=[
                    self._family_key(family.family_id),
                    self._user_families_key(family.user_id),
                    self._expiry_key("families"),
                ],
                args=[
                    family.family_id,
                    family.user_id,
                    serialize_datetime(family.created_at),
                    serialize_datetime(expires_at),
                    expires_at.timestamp(),
                    self._expire_at(expires_at),
                ],
            )
        saved = self.get_family(family.family_id)
        return saved if saved is not None else family

    def get_family(self, family_id: str) -> Optional[TokenFamily]:
        with self._guard("get_family"):
            data = self.client.hgetall(self._family_key(family_id))
        if not data:
            return None
        return self._family_from_hash(family_id, data)

    def revoke_family(self, family_id: str, revoked_at: datetime) -> bool:
        with self._guard("revoke_family"):
            outcome = self._revoke_family(
                keys=[self._family_key(family_id)],
                args=[serialize_datetime(revoked_at)],
            )
        return int(outcome) == 1

    def is_family_revoked(self, family_id: str) -> bool:
        with self._guard("is_family_revoked"):
            return self.client.hget(self._family_key(family_id), "revoked") == "1"

    def list_user_families(self, user_id: str) -> List[TokenFamily]:
        with self._guard("list_user_families"):
            family_ids = sorted(self.client.smembers(self._user_families_key(user_id)))
            if not family_ids:
                return []
            pipe = self.client.pipeline(transaction=False)
            for family_id in family_ids:
                pipe.hgetall(self._family_key(family_id))
            rows = pipe.execute()
        return [
            self._family_from_hash(family_id, data)
            for family_id, data in zip(family_ids, rows)
            if data
        ]

    # -- revocation markers --------------------------------------------------

    def add_revoked_marker(self, marker: RevokedTokenMarker) -> bool:
        with self._guard("add_revoked_marker"):
            outcome = self._add_marker(
                keys=[self._marker_key(marker.jti), self._expiry_key("markers")],
                args=[
                    marker.user_id or "",
                    serialize_datetime(marker.revoked_at),
                    serialize_datetime(marker.expires_at),
                    marker.reason,
                    ensure_utc(marker.expires_at).timestamp(),
                    marker.jti,
                    self._expire_at(marker.expires_at),
                ],
            )
        return int(outcome) == 1

    def is_token_revoked(self, jti: str) -> bool:
        with self._guard("is_token_revoked"):
            return bool(self.client.exists(self._marker_key(jti)))

    # -- expiry --------------------------------------------------------------

    def _expired_batch(self, kind: str, cutoff_ts: float) -> List[str]:
        return self.client.zrangebyscore(
            self._expiry_key(kind), "-inf", cutoff_ts, start=0, num=_SWEEP_BATCH
        )

    def delete_expired(self, cutoff: datetime) -> ReapResult:
        """Sweep the expiry indexes in small batches so other clients interleave."""
        cutoff_ts = ensure_utc(cutoff).timestamp()
        result = ReapResult()
        with self._guard("delete_expired"):
            while True:
                jtis = self._expired_batch("tokens", cutoff_ts)
                if not jtis:
                    break
                owners = self.client.pipeline(transaction=False)
                for jti in jtis:
                    owners.hget(self._token_key(jti), "user_id")
                user_ids = owners.execute()
                pipe = self.client.pipeline(transaction=True)
                for jti, user_id in zip(jtis, user_ids):
                    pipe.delete(self._token_key(jti))
                    pipe.delete(self._marker_key(jti))
                    if user_id:
                        pipe.zrem(self._user_tokens_key(user_id), jti)
                pipe.zrem(self._expiry_key("tokens"), *jtis)
                pipe.zrem(self._expiry_key("markers"), *jtis)
                outcomes = pipe.execute()
                cursor = 0
                for user_id in user_ids:
                    result.tokens += int(outcomes[cursor])
                    result.markers += int(outcomes[cursor + 1])
                    cursor += 3 if user_id else 2

            while True:
                jtis = self._expired_batch("markers", cutoff_ts)
                if not jtis:
                    break
                pipe = self.client.pipeline(transaction=True)
                for jti in jtis:
                    pipe.delete(self._marker_key(jti))
                pipe.zrem(self._expiry_key("markers"), *jtis)
                outcomes = pipe.execute()
                result.markers += sum(int(value) for value in outcomes[: len(jtis)])

            while True:
                family_ids = self._expired_batch("families", cutoff_ts)
                if not family_ids:
                    break
                owners = self.client.pipeline(transaction=False)
                for family_id in family_ids:
                    owners.hget(self._family_key(family_id), "user_id")
                user_ids = owners.execute()
                pipe = self.client.pipeline(transaction=True)
                for family_id, user_id in zip(family_ids, user_ids):
                    pipe.delete(self._family_key(family_id))
                    if user_id:
                        pipe.srem(self._user_families_key(user_id), family_id)
                pipe.zrem(self._expiry_key("families"), *family_ids)
                pipe.execute()
                result.families += len(family_ids)
        return result


__all__ = ["RedisTokenStore"]
