from __future__ import annotations

import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from tokenward.config import StoreBackend, get_settings, reset_settings_cache
from tokenward.logging import get_logger
from tokenward.service.audit import AuditSink, LoggingAuditSink
from tokenward.service.codec import ClaimCodec
from tokenward.service.reaper import ExpiryReaper
from tokenward.service.tokens import TokenManager
from tokenward.storage.memory import MemoryTokenStore, MemoryUserDirectory
from tokenward.storage.redis_store import RedisTokenStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a connection URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        user = parsed.username or ""
        netloc = f"{user}:***@{netloc}"
        return urlunparse(
            (
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            )
        )
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds the singleton store, codec and token manager for a process."""

    def __init__(self, *, audit: Optional[AuditSink] = None):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            store_backend=self.settings.store_backend.value,
            test_mode=self.settings.test_mode,
        )
        self.store = self._build_store()
        self.codec = ClaimCodec.from_settings(self.settings)
        self.users = MemoryUserDirectory()
        self.audit = audit or LoggingAuditSink()
        self.tokens = TokenManager(
            self.store, self.codec, self.users, self.settings, audit=self.audit
        )
        self.reaper = ExpiryReaper(
            self.store,
            interval_seconds=self.settings.reaper_interval_seconds,
            grace_seconds=self.settings.reaper_grace_seconds,
        )
        logger.info(
            "runtime_initialized",
            store_type=self.store_type,
            reaper_enabled=self.settings.reaper_enabled,
            max_sessions_per_user=self.settings.max_sessions_per_user,
        )

    @property
    def store_type(self) -> str:
        return "redis" if isinstance(self.store, RedisTokenStore) else "memory"

    def _build_store(self) -> Union[MemoryTokenStore, RedisTokenStore]:
        timeout = self.settings.store_timeout_ms / 1000
        if self.settings.store_backend == StoreBackend.REDIS:
            try:
                store = RedisTokenStore(
                    self.settings.redis_url,
                    socket_timeout=timeout,
                    retention_seconds=self.settings.reaper_grace_seconds,
                )
                store.verify_connection()
                logger.info(
                    "runtime_store_initialized",
                    store_type="redis",
                    redis_url=_mask_url_password(self.settings.redis_url),
                )
                return store
            except Exception as exc:
                if not self.settings.test_mode:
                    logger.error(
                        "runtime_store_init_failed",
                        store_type="redis",
                        redis_url=_mask_url_password(self.settings.redis_url),
                        error_type=type(exc).__name__,
                        error=str(exc),
                    )
                    raise RuntimeError(
                        "Redis token store is unreachable; start Redis or set "
                        "TOKEN_STORE_BACKEND=memory for a single-process deployment."
                    ) from exc
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(exc),
                    mode="TEST_MODE",
                )
        store = MemoryTokenStore(
            shard_count=self.settings.store_shard_count, lock_timeout=timeout
        )
        logger.info(
            "runtime_store_initialized",
            store_type="memory",
            shard_count=self.settings.store_shard_count,
        )
        return store

    async def start(self) -> None:
        """Start background work; currently the expiry reaper when enabled."""
        if self.settings.reaper_enabled:
            await self.reaper.start()

    async def stop(self) -> None:
        await self.reaper.stop()

    def close(self) -> None:
        if isinstance(self.store, RedisTokenStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking:
    - First check without lock (fast path for an existing runtime)
    - Second check with lock to prevent a race during creation
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            try:
                runtime.close()
            except Exception as exc:
                logger.debug("runtime_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


__all__ = ["Runtime", "get_runtime", "reset_runtime_for_tests"]
