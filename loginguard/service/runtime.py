from __future__ import annotations

import asyncio
import threading
from contextvars import ContextVar
from typing import Optional
from urllib.parse import urlparse, urlunparse

from loginguard.config import get_settings, reset_settings_cache
from loginguard.logging import get_logger
from loginguard.service.audit import AuditSink
from loginguard.service.backends import CredentialVerifier, HttpCredentialVerifier
from loginguard.service.csrf import CsrfTokenStore
from loginguard.service.orchestrator import LoginOrchestrator, MfaPolicy
from loginguard.storage.memory import InMemoryRateLimitStore, InMemorySessionStore
from loginguard.storage.redis_cache import RedisCache, RedisRateLimitStore, RedisSessionStore

logger = get_logger(__name__)

# Address of the caller for the current request, set by the transport layer
client_ip_var: ContextVar[Optional[str]] = ContextVar("client_ip", default=None)


async def context_client_ip() -> str:
    return client_ip_var.get() or "unknown"


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password part of a URL for safe logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.netloc.replace(f":{parsed.password}@", ":***@")
            return urlunparse(parsed._replace(netloc=netloc))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds the process-wide stores and the orchestrator built on them."""

    def __init__(
        self,
        *,
        verifier: Optional[CredentialVerifier] = None,
        check_mfa_requirement: Optional[MfaPolicy] = None,
        audit_sink: Optional[AuditSink] = None,
    ):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_redis_store=self.settings.use_redis_store,
            test_mode=self.settings.test_mode,
        )

        self.cache: Optional[RedisCache] = None
        if self.settings.use_redis_store:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
            except Exception as exc:
                logger.error(
                    "runtime_redis_unavailable",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                raise RuntimeError(
                    "USE_REDIS_STORE is set but Redis is unreachable; "
                    "start Redis or unset USE_REDIS_STORE for process-local stores."
                ) from exc
            self.cache = cache
            self.rate_limit_store = RedisRateLimitStore(cache)
            self.session_store = RedisSessionStore(cache)
        else:
            self.rate_limit_store = InMemoryRateLimitStore()
            self.session_store = InMemorySessionStore()

        self.csrf_tokens = CsrfTokenStore()

        if verifier is None:
            if not self.settings.credential_backend_url:
                raise RuntimeError(
                    "No credential backend configured; set CREDENTIAL_BACKEND_URL or pass a verifier"
                )
            verifier = HttpCredentialVerifier(
                self.settings.credential_backend_url,
                api_key=self.settings.credential_backend_api_key,
                timeout=self.settings.verification_timeout_seconds,
            )

        self.orchestrator = LoginOrchestrator(
            verifier,
            get_client_ip=context_client_ip,
            check_mfa_requirement=check_mfa_requirement,
            audit_sink=audit_sink,
            csrf_source=self.csrf_tokens,
            settings=self.settings,
            rate_limit_store=self.rate_limit_store,
            session_store=self.session_store,
        )
        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            verifier=type(verifier).__name__,
            **self.orchestrator.policy.model_dump(),
        )


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime(**kwargs) -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Keyword arguments are only used when the runtime is first created.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime(**kwargs)
        return runtime


def get_orchestrator() -> LoginOrchestrator:
    return get_runtime().orchestrator


def reset_runtime_for_tests(**kwargs) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                asyncio.run(runtime.cache.close())
            except RuntimeError as exc:
                logger.warning("runtime_cache_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(**kwargs)
        return runtime
