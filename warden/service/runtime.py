from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from redis.exceptions import RedisError

from warden.config import get_settings, reset_settings_cache
from warden.logging import get_logger
from warden.service.auth import AuthService
from warden.service.email import EmailService
from warden.storage.memory import MemoryStore
from warden.storage.postgres import PostgresStore
from warden.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a connection URL with ``***`` for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds the store, cache and auth service built from settings."""

    def __init__(self):
        self.settings = get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            store_type=store_type,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.cache: Optional[RedisCache] = None
        if self.settings.redis_url:
            cache = RedisCache(self.settings.redis_url)
            try:
                cache.verify_connection()
            except (RedisError, OSError) as exc:
                if not self.settings.test_mode:
                    raise RuntimeError(
                        "REDIS_URL is set but Redis is unreachable; rate limits and the "
                        "access-token denylist depend on it"
                    ) from exc
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(exc),
                )
            else:
                self.cache = cache
        else:
            logger.info("redis_not_configured")

        self.email = EmailService.from_settings(self.settings)
        if not self.email.is_configured:
            logger.info("email_dev_mode_enabled")
        self.auth = AuthService(
            self.store, self.cache, self.settings, notifier=self.email
        )
        logger.info("runtime_init_completed", redis_enabled=self.cache is not None)

    async def close(self) -> None:
        await self.auth.wait_for_notifications()
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.pool.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton, double-checked under a lock."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the singleton from fresh settings. Only allowed in TEST_MODE."""
    global runtime
    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                asyncio.run(runtime.cache.close())
            else:
                loop.create_task(runtime.cache.close())
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
