from __future__ import annotations

import threading
from datetime import timedelta
from typing import Optional
from urllib.parse import urlparse, urlunparse

from orgidp.config import get_settings, reset_settings_cache
from orgidp.logging import get_logger
from orgidp.service.audit import AuditDispatcher, LoggingAuditSink, StoreAuditSink
from orgidp.service.codes import AuthorizationCodeManager
from orgidp.service.hashing import CredentialHasher
from orgidp.service.oauth import OAuthService
from orgidp.service.permissions import PermissionResolver
from orgidp.service.revocation import RevocationService
from orgidp.service.rotation import RefreshRotator
from orgidp.service.signer import JWTSigner
from orgidp.service.tokens import TokenIssuer
from orgidp.storage.memory import MemoryStore, MemoryTTLStore
from orgidp.storage.postgres import PostgresStore
from orgidp.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for safe logging.

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
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
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

        self.cache = self._init_cache()

        self.hasher = CredentialHasher(
            self.settings.hmac_secret,
            binding_salt=self.settings.binding_salt,
            ip_binding_mode=self.settings.ip_binding_mode,
        )
        self.signer = JWTSigner(self.settings.jwt_secret, self.settings.issuer_base_url)
        self.audit = AuditDispatcher(
            LoggingAuditSink(),
            StoreAuditSink(self.store),
            workers=self.settings.audit_workers,
            max_pending=self.settings.audit_max_pending,
        )
        self.resolver = PermissionResolver(self.store)
        self.codes = AuthorizationCodeManager(self.store, self.hasher, audit=self.audit)
        self.issuer = TokenIssuer(
            self.store,
            self.codes,
            self.resolver,
            self.signer,
            self.hasher,
            audit=self.audit,
        )
        self.rotator = RefreshRotator(self.store, self.issuer, self.hasher, audit=self.audit)
        self.revocation = RevocationService(
            self.cache,
            self.store,
            self.signer,
            marker_ttl=timedelta(hours=self.settings.revocation_marker_ttl_hours),
            audit=self.audit,
        )
        self.oauth = OAuthService(
            self.store,
            self.codes,
            self.issuer,
            self.rotator,
            self.revocation,
            self.signer,
            audit=self.audit,
        )
        logger.info("runtime_init_complete", store_type=store_type)

    def _init_cache(self):
        cache = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids binding to a per-test event loop
                if self.settings.test_mode:
                    candidate = SyncRedisCache(self.settings.redis_url)
                else:
                    candidate = RedisCache(self.settings.redis_url)
                candidate.verify_connection()
                cache = candidate
            except Exception as exc:
                redis_error = exc

        if cache is not None:
            return cache

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for the revocation denylist; start Redis or set "
                "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for a process-local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; revocation markers are "
                "process-local and not shared across instances."
            ),
            mode=fallback_mode,
        )
        return MemoryTTLStore()

    async def close(self) -> None:
        self.audit.shutdown(wait=True)
        await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking:
    - First check without lock (fast path for existing runtime)
    - Second check with lock to prevent race condition during creation
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
            runtime.audit.shutdown(wait=True)
            # SyncRedisCache uses a sync client internally, close it directly
            if isinstance(runtime.cache, SyncRedisCache):
                runtime.cache.client.close()

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
