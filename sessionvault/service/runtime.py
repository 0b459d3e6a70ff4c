from __future__ import annotations

import asyncio
import threading
from typing import Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from sessionvault.config import get_settings, reset_settings_cache
from sessionvault.logging import get_logger
from sessionvault.service.auth import AuthService
from sessionvault.service.errors import RateLimitedError
from sessionvault.storage.memory import MemoryStore
from sessionvault.storage.memory_cache import MemorySessionCache
from sessionvault.storage.postgres import PostgresStore
from sessionvault.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url, fs_root=self.settings.shared_fs_root
                )
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache = None
        self.redis_enabled = False
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids binding to a pytest event loop
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
                self.redis_enabled = True
            except Exception as exc:
                redis_error = exc

        if self.cache is None:
            if (
                not self.settings.test_mode
                and not self.settings.allow_redis_fallback_dev
            ):
                raise RuntimeError(
                    "Redis is required for session records and rate limits; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error

            fallback_mode = (
                "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            )
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; sessions and rate "
                    "limits live in this process only."
                ),
                mode=fallback_mode,
            )
            self.cache = MemorySessionCache()

        self.auth = AuthService(self.store, self.cache, self.settings)

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.redis_enabled,
            access_token_ttl_minutes=self.settings.access_token_ttl_minutes,
            refresh_token_ttl_minutes=self.settings.refresh_token_ttl_minutes,
        )


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Double-checked locking: the fast path skips the lock once the runtime
    exists, the slow path re-checks under the lock before creating it.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def _close_cache(current: Runtime) -> None:
    cache = current.cache
    if cache is None:
        return
    try:
        if isinstance(cache, SyncRedisCache):
            cache.client.close()
        elif isinstance(cache, RedisCache):
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(cache.close())
            except RuntimeError:
                asyncio.run(cache.close())
    except Exception as exc:
        # Connection may already be closed
        logger.debug("runtime_cache_close_failed", error=str(exc))


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            _close_cache(runtime)

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
) -> Union[bool, Tuple[bool, int, int]]:
    """Token-bucket check against whichever cache the runtime holds."""
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning(
            "rate_limit_invalid_window",
            key=key,
            window_seconds=window_seconds,
            message="Invalid rate limit window_seconds; defaulting to 60 seconds",
        )
        window_seconds = 60
    return await runtime.cache.check_rate_limit(
        key, limit, window_seconds, return_remaining=return_remaining
    )


async def enforce_rate_limit(
    runtime: Runtime, key: str, limit: int, window_seconds: int = 60
) -> None:
    allowed, _remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    if not allowed:
        logger.info("rate_limited", key=key, retry_after=reset_seconds)
        raise RateLimitedError(
            "rate limit exceeded", detail={"retry_after": reset_seconds}
        )
