from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from tokenforge.config import get_settings, reset_settings_cache
from tokenforge.logging import get_logger
from tokenforge.service.audit import AuditRecorder
from tokenforge.service.auth import AuthService
from tokenforge.service.clock import Clock, system_clock
from tokenforge.service.keys import KeyRotationWorker, SigningKeyManager
from tokenforge.service.login_policy import LoginPolicy
from tokenforge.service.mfa import MfaService
from tokenforge.service.sealing import SecretSealer
from tokenforge.service.sessions import SessionLedger
from tokenforge.service.tokens import TokenService
from tokenforge.storage.memory import MemoryStore
from tokenforge.storage.memory_cache import MemoryCache
from tokenforge.storage.postgres import PostgresStore
from tokenforge.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
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
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, *, clock: Clock | None = None):
        self.settings = get_settings()
        self.clock = clock or system_clock
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Union[RedisCache, MemoryCache, None] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if self.cache is None:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for the token blacklist, MFA secrets and reset tokens; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = (
                "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            )
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                mode=fallback_mode,
            )
            self.cache = MemoryCache(clock=self.clock)

        sealer = SecretSealer(self.settings.key_encryption_key)
        self.audit = AuditRecorder(self.store, clock=self.clock)
        self.keys = SigningKeyManager(self.store, self.settings, clock=self.clock, sealer=sealer)
        self.keys.load()
        self.tokens = TokenService(self.keys, self.settings, clock=self.clock)
        self.sessions = SessionLedger(self.store, self.tokens, clock=self.clock)
        self.policy = LoginPolicy(self.store, self.audit, self.settings, clock=self.clock)
        self.mfa = MfaService(
            self.cache, self.store, self.audit, self.settings, clock=self.clock, sealer=sealer
        )
        self.auth = AuthService(
            self.store,
            self.cache,
            self.settings,
            tokens=self.tokens,
            sessions=self.sessions,
            policy=self.policy,
            mfa=self.mfa,
            audit=self.audit,
            clock=self.clock,
        )
        self.key_rotation_worker = KeyRotationWorker(
            self.keys, interval_seconds=self.settings.key_check_seconds
        )

        logger.info(
            "runtime_initialized",
            redis_enabled=isinstance(self.cache, RedisCache),
            signing_key=self.keys.current_key().kid,
            key_rotation_enabled=self.settings.key_rotation_enabled,
        )

    async def close(self) -> None:
        if self.key_rotation_worker.running:
            await self.key_rotation_worker.stop()
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(*, clock: Clock | None = None) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.cache, RedisCache):
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.cache.close())
            except RuntimeError:
                asyncio.run(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(clock=clock)
        return runtime
