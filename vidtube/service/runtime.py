from __future__ import annotations

import threading
from typing import Dict, Optional
from urllib.parse import urlparse, urlunparse

from redis.asyncio import Redis

from vidtube.config import RateLimitBackend, Settings, get_settings, reset_settings_cache
from vidtube.logging import get_logger
from vidtube.service.email import EmailService
from vidtube.service.interactions import InteractionService
from vidtube.service.password_reset import PasswordResetService
from vidtube.service.rate_limit import (
    FixedWindowRateLimiter,
    RateLimiter,
    RedisFixedWindowRateLimiter,
)
from vidtube.service.tokens import AuthService
from vidtube.storage.memory import MemoryStore
from vidtube.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a connection URL for safe logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Owns the store, services and rate limiters used by the app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
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
                store_type="memory" if self.settings.use_memory_store else "postgres",
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.redis = None
        self.limiters: Dict[str, RateLimiter] = self._build_limiters()

        self.auth = AuthService(self.store, self.settings)
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
        )
        self.password_reset = PasswordResetService(
            self.store, self.auth, self.email, self.settings
        )
        self.interactions = InteractionService(self.store)

        logger.info(
            "runtime_initialized",
            store_type=type(self.store).__name__,
            rate_limit_backend=self.settings.rate_limit_backend.value,
            email_configured=self.email.is_configured,
        )

    def _build_limiters(self) -> Dict[str, RateLimiter]:
        policies = {
            "auth": (
                self.settings.auth_rate_limit_window_seconds,
                self.settings.auth_rate_limit_max,
            ),
            "api": (
                self.settings.api_rate_limit_window_seconds,
                self.settings.api_rate_limit_max,
            ),
            "upload": (
                self.settings.upload_rate_limit_window_seconds,
                self.settings.upload_rate_limit_max,
            ),
        }
        if self.settings.rate_limit_backend is RateLimitBackend.REDIS:
            if not self.settings.redis_url:
                raise RuntimeError("RATE_LIMIT_BACKEND=redis requires REDIS_URL")
            self.redis = Redis.from_url(self.settings.redis_url, decode_responses=True)
            logger.info(
                "rate_limit_redis_enabled",
                redis_url=_mask_url_password(self.settings.redis_url),
            )
            return {
                name: RedisFixedWindowRateLimiter(
                    self.redis, name, window_seconds=window, max_requests=limit
                )
                for name, (window, limit) in policies.items()
            }
        return {
            name: FixedWindowRateLimiter(name, window_seconds=window, max_requests=limit)
            for name, (window, limit) in policies.items()
        }

    def limiter(self, name: str) -> RateLimiter:
        return self.limiters[name]

    async def close(self) -> None:
        if self.redis is not None:
            await self.redis.aclose()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
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
        reset_settings_cache()
        runtime = Runtime()
        return runtime
