from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from otpauth.config import get_settings, reset_settings_cache
from otpauth.logging import get_logger
from otpauth.service.admin import AdminService
from otpauth.service.auth import AuthService
from otpauth.service.login_session import LoginSessionStore
from otpauth.service.otp import OtpRepository
from otpauth.service.rate_limit import RateLimiter
from otpauth.service.settings_store import SettingsStore
from otpauth.service.tokens import TokenService
from otpauth.service.transaction import TransactionManager
from otpauth.storage.memory import MemoryStore
from otpauth.storage.models import AppSetting
from otpauth.storage.postgres import PostgresStore
from otpauth.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Hide the password in a connection URL, e.g. redis://:***@host:6379/0."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        host = parsed.hostname or ""
        if parsed.port:
            host = f"{host}:{parsed.port}"
        return urlunparse(parsed._replace(netloc=f"{parsed.username or ''}:***@{host}"))
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app and the CLI."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            if self.settings.use_memory_store:
                self.store = MemoryStore()
            else:
                self.store = PostgresStore(
                    self.settings.database_url,
                    min_size=self.settings.db_pool_min_size,
                    max_size=self.settings.db_pool_max_size,
                    statement_timeout_ms=self.settings.db_statement_timeout_ms,
                )
                self.store.ensure_schema()
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
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # sync client in test mode avoids event loop binding issues
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if (
                not self.settings.test_mode
                and not self.settings.allow_redis_fallback_dev
            ):
                raise RuntimeError(
                    "Redis is required for login sessions and rate limits; "
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
                    f"Running without Redis under {fallback_mode}; login sessions and "
                    "rate limits are process-local only."
                ),
                mode=fallback_mode,
            )

        self.app_settings = SettingsStore(
            default_expire_minutes=self.settings.default_access_token_expire_minutes
        )
        self.app_settings.init(self.store)

        self.tokens = TokenService(self.app_settings)
        self.otps = OtpRepository(
            self.store,
            cooldown_seconds=self.settings.otp_cooldown_seconds,
            window_seconds=self.settings.otp_window_seconds,
            max_per_window=self.settings.otp_max_per_window,
        )
        self.login_sessions = LoginSessionStore(
            self.cache,
            ttl_seconds=self.settings.login_session_ttl_seconds,
            max_tries=self.settings.login_session_max_tries,
        )
        self.rate_limiter = RateLimiter(self.cache)
        self.transactions = TransactionManager(
            self.store,
            max_concurrent=None
            if self.settings.use_memory_store
            else self.settings.db_pool_max_size,
        )
        self.auth = AuthService(self.store, self.otps, self.login_sessions, self.tokens)
        self.admin = AdminService(self.store, self.auth)

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            otp_cooldown_seconds=self.settings.otp_cooldown_seconds,
            otp_max_per_window=self.settings.otp_max_per_window,
        )

    def reload_settings(self) -> AppSetting:
        """Re-read the persisted settings row into the in-memory store."""
        return self.app_settings.reload(self.store)

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Double-checked locking: a lock-free fast path once the runtime exists,
    and a locked re-check during creation.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def _close_cache(cache) -> None:
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        asyncio.run(cache.close())
        return
    loop.create_task(cache.close())


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                _close_cache(runtime.cache)
            except (ConnectionError, OSError, RuntimeError) as exc:
                logger.warning("runtime_cache_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


__all__ = ["Runtime", "get_runtime", "reset_runtime_for_tests"]
