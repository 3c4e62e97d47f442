from __future__ import annotations

import asyncio
from typing import Any, Optional
from urllib.parse import urlparse, urlunparse

from tonotes.config import Settings, get_settings
from tonotes.logging import get_logger
from tonotes.service.auth import AuthService, AuthStore
from tonotes.service.passwords import PasswordHasher
from tonotes.service.sessions import SessionRegistry
from tonotes.service.tokens import TokenService
from tonotes.service.two_factor import TwoFactorService
from tonotes.service.user_agent import LocationResolver
from tonotes.storage.memory import MemoryStore
from tonotes.storage.postgres import PostgresStore
from tonotes.storage.redis_cache import RedisCache

logger = get_logger(__name__)

_UNSET: Any = object()


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Explicit handle for settings, storage and services.

    Built once at startup and attached to ``app.state``; tests build their own
    with a ``MemoryStore`` and no cache.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[AuthStore] = None,
        cache: Optional[RedisCache] = _UNSET,
        hasher: Optional[PasswordHasher] = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        self.store = store if store is not None else self._build_store()
        self.cache = self._build_cache() if cache is _UNSET else cache

        self.tokens = TokenService.from_settings(self.settings, self.cache)
        self.sessions = SessionRegistry(
            self.store,
            self.cache,
            max_sessions=self.settings.max_sessions_per_user,
            ttl_hours=self.settings.session_ttl_hours,
            idle_hours=self.settings.session_idle_hours,
            store_timeout=self.settings.store_timeout_seconds,
            locator=LocationResolver(
                enabled=self.settings.geoip_enabled,
                url_template=self.settings.geoip_url,
                timeout=self.settings.geoip_timeout_seconds,
            ),
        )
        self.two_factor = TwoFactorService(
            self.store,
            issuer=self.settings.mfa_issuer,
            store_timeout=self.settings.store_timeout_seconds,
        )
        self.auth = AuthService(
            self.store,
            self.settings,
            tokens=self.tokens,
            sessions=self.sessions,
            two_factor=self.two_factor,
            hasher=hasher,
        )

    def _build_store(self) -> AuthStore:
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            if self.settings.use_memory_store:
                store: AuthStore = MemoryStore(
                    secret_key=self.settings.secret_encryption_key
                )
            else:
                store = PostgresStore(
                    self.settings.database_url,
                    secret_key=self.settings.secret_encryption_key,
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
        return store

    def _build_cache(self) -> Optional[RedisCache]:
        cache: Optional[RedisCache] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
            except Exception as exc:
                redis_error = exc
                cache = None

        if cache:
            return cache
        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for token revocation and the session cache; "
                "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error
        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; the token blacklist is "
                "process-local and sessions are read from the store."
            ),
            mode=fallback_mode,
        )
        return None

    async def check_store(self, timeout: float = 2.0) -> bool:
        await asyncio.wait_for(asyncio.to_thread(self.store.ping), timeout=timeout)
        return True

    async def check_cache(self, timeout: float = 2.0) -> Optional[bool]:
        """None when no cache is configured."""
        if self.cache is None:
            return None
        return await asyncio.wait_for(self.cache.ping(), timeout=timeout)

    async def close(self) -> None:
        if self.cache is not None:
            try:
                await self.cache.close()
            except Exception as exc:
                logger.warning("redis_close_failed", error=str(exc))
        close_store = getattr(self.store, "close", None)
        if callable(close_store):
            await asyncio.to_thread(close_store)
        logger.info("runtime_closed")
