"""Login pipeline: input gates, lockout, CSRF, backend verification, session minting.

Stages run in order and each one either passes or raises a ``ServiceError``
tagged with the stage that failed::

    sanitize -> threat scan -> rate reserve -> csrf check -> verify
             -> (mfa challenge | session)

``secure_login`` is the only boundary: it turns every failure, expected or not,
into a ``LoginResult`` and emits one audit event per attempt.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Awaitable, Callable, List, Mapping, Optional, Set, Union

from pydantic import ValidationError

from loginguard.api.schemas import LoginCredentials, LoginResult, RateLimitSnapshot
from loginguard.config import LoginPolicy, Settings, get_settings
from loginguard.logging import get_logger, sanitize_error_message, set_correlation_id
from loginguard.service.audit import (
    LOGIN_SUCCESS,
    AuditDispatcher,
    AuditEvent,
    AuditSink,
    LoggingAuditSink,
)
from loginguard.service.backends import CredentialVerifier, VerificationResult
from loginguard.service.clock import Clock, SystemClock
from loginguard.service.csrf import CsrfTokenSource, validate_token
from loginguard.service.errors import (
    BackendRejectedError,
    BackendUnavailableError,
    CsrfViolationError,
    InputRejectedError,
    InvalidEmailError,
    NoSessionError,
    RateLimitedError,
    ServerError,
    ServiceError,
    SuspiciousInputError,
    VerificationTimeoutError,
)
from loginguard.service.password_strength import evaluate_password
from loginguard.service.rate_limit import RateLimiter, RateLimitStore, rate_limit_identifier
from loginguard.service.sanitizer import detect_suspicious_input, merge_reports, sanitize_input
from loginguard.service.sessions import SessionAuthority, SessionStore
from loginguard.storage.memory import InMemoryRateLimitStore, InMemorySessionStore
from loginguard.storage.models import AuthenticatedUser

logger = get_logger(__name__)

ClientIpResolver = Callable[[], Awaitable[str]]
MfaPolicy = Callable[[AuthenticatedUser], Awaitable[bool]]

INVALID_EMAIL_MESSAGE = "Invalid email format"
SUSPICIOUS_INPUT_MESSAGE = "Suspicious input detected"
RATE_LIMITED_MESSAGE = "Too many login attempts. Please try again later."
CSRF_INVALID_MESSAGE = "Invalid security token"
CSRF_MISSING_MESSAGE = "Missing security token"
GENERIC_CREDENTIALS_MESSAGE = "Invalid email or password"
BACKEND_DEFAULT_MESSAGE = "Invalid login credentials"
BACKEND_UNAVAILABLE_MESSAGE = "Authentication service unavailable. Please try again later."
TIMEOUT_MESSAGE = "Authentication service timed out. Please try again."
NO_SESSION_MESSAGE = "Authentication failed - no session returned"
UNEXPECTED_MESSAGE = "An unexpected error occurred during login"
INVALID_REQUEST_MESSAGE = "Invalid login request"
WEAK_PASSWORD_WARNING = "Weak password detected"


async def _no_mfa(user: AuthenticatedUser) -> bool:
    return False


@dataclass
class _Attempt:
    """Mutable per-attempt state shared by the stages."""

    audit_email: str
    started: float
    identifier: Optional[str] = None
    warnings: List[str] = field(default_factory=list)
    flags: List[str] = field(default_factory=list)


class LoginOrchestrator:
    """Rate-limited secure login in front of an external credential backend."""

    def __init__(
        self,
        verifier: CredentialVerifier,
        *,
        get_client_ip: ClientIpResolver,
        check_mfa_requirement: Optional[MfaPolicy] = None,
        audit_sink: Optional[AuditSink] = None,
        csrf_source: Optional[CsrfTokenSource] = None,
        settings: Optional[Settings] = None,
        rate_limit_store: Optional[RateLimitStore] = None,
        session_store: Optional[SessionStore] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.verifier = verifier
        self.get_client_ip = get_client_ip
        self.check_mfa_requirement = check_mfa_requirement or _no_mfa
        self.csrf_source = csrf_source
        self.clock = clock or SystemClock()
        policy = self.settings.login_policy()
        self.rate_limiter = RateLimiter(
            rate_limit_store or InMemoryRateLimitStore(), policy, clock=self.clock
        )
        self.sessions = SessionAuthority(
            session_store or InMemorySessionStore(),
            timedelta(milliseconds=policy.session_timeout_ms),
            clock=self.clock,
        )
        self.audit = AuditDispatcher(audit_sink or LoggingAuditSink())
        self._inflight: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Public interface
    # ------------------------------------------------------------------

    @property
    def policy(self) -> LoginPolicy:
        return self.rate_limiter.policy

    def configure(
        self,
        *,
        max_attempts: Optional[int] = None,
        rate_limit_window_ms: Optional[int] = None,
        block_duration_ms: Optional[int] = None,
        session_timeout_ms: Optional[int] = None,
    ) -> LoginPolicy:
        """Adjust lockout and session policy; omitted values are kept."""
        updates = {
            "max_attempts": max_attempts,
            "rate_limit_window_ms": rate_limit_window_ms,
            "block_duration_ms": block_duration_ms,
            "session_timeout_ms": session_timeout_ms,
        }
        merged = {**self.policy.model_dump(), **{k: v for k, v in updates.items() if v is not None}}
        policy = LoginPolicy(**merged)
        self.rate_limiter.policy = policy
        self.sessions.session_timeout = timedelta(milliseconds=policy.session_timeout_ms)
        logger.info("login_policy_updated", **policy.model_dump())
        return policy

    async def get_rate_limit_snapshot(self, identifier: str) -> Optional[RateLimitSnapshot]:
        entry = await self.rate_limiter.snapshot(identifier)
        return RateLimitSnapshot.from_entry(entry) if entry else None

    async def secure_login(
        self, credentials: Union[LoginCredentials, Mapping[str, Any]]
    ) -> LoginResult:
        """Run one login attempt; never raises.

        The attempt runs in its own task: if the caller is cancelled, auditing
        and attempt counting still complete and only the result is dropped.
        """
        task = asyncio.ensure_future(self._run(credentials))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return await asyncio.shield(task)

    async def drain(self) -> None:
        """Wait for attempts abandoned by their callers and pending audit deliveries."""
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)
        await self.audit.drain()

    # ------------------------------------------------------------------
    # Boundary
    # ------------------------------------------------------------------

    async def _run(self, credentials: Union[LoginCredentials, Mapping[str, Any]]) -> LoginResult:
        set_correlation_id()
        attempt = _Attempt(audit_email=_raw_email(credentials), started=time.perf_counter())
        try:
            result = await self._attempt(credentials, attempt)
        except ServiceError as exc:
            result = self._reject(exc, attempt)
        except Exception as exc:
            logger.error(
                "login_unexpected_error",
                error_type=type(exc).__name__,
                error=str(exc),
                exc_info=True,
            )
            result = self._reject(
                ServerError(UNEXPECTED_MESSAGE, detail={"error_type": type(exc).__name__}),
                attempt,
            )
        await self._housekeep()
        return result

    def _reject(self, exc: ServiceError, attempt: _Attempt) -> LoginResult:
        logger.info(
            "login_rejected",
            stage=exc.error_code,
            flags=exc.flags,
            status_code=exc.status_code,
        )
        self._emit(exc.audit_event, attempt, False, exc.flags, exc.detail)
        retry_after = getattr(exc, "retry_after_seconds", None)
        locked_until = getattr(exc, "locked_until", None)
        return LoginResult.failure(
            exc.message,
            error_code=exc.error_code,
            warnings=[*attempt.warnings, *exc.warnings],
            retry_after_seconds=retry_after,
            locked_until=locked_until,
        )

    def _emit(
        self,
        event: str,
        attempt: _Attempt,
        success: bool,
        flags: List[str],
        metadata: Optional[dict] = None,
    ) -> None:
        self.audit.emit(
            AuditEvent(
                event=event,
                email=attempt.audit_email,
                success=success,
                security_flags=list(flags),
                metadata=dict(metadata or {}),
            )
        )

    async def _housekeep(self) -> None:
        try:
            interval = self.settings.session_cleanup_interval_minutes
            await self.sessions.maybe_cleanup(interval)
            await self.rate_limiter.maybe_purge(interval)
        except Exception as exc:
            logger.warning("login_housekeeping_failed", error=str(exc))

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _attempt(
        self, raw: Union[LoginCredentials, Mapping[str, Any]], attempt: _Attempt
    ) -> LoginResult:
        credentials = _coerce_credentials(raw)
        email = self._screen_input(credentials)
        attempt.audit_email = email

        client_ip = await self.get_client_ip()
        attempt.identifier = rate_limit_identifier(email, client_ip)
        decision = await self.rate_limiter.reserve(attempt.identifier)
        if not decision.allowed:
            raise RateLimitedError(
                RATE_LIMITED_MESSAGE,
                retry_after_seconds=decision.retry_after_seconds,
                locked_until=decision.reset_at,
                detail={"retry_after_seconds": decision.retry_after_seconds},
            )

        # The reserved slot is settled exactly once: recorded on a counted
        # rejection, released on everything else.
        settled = False
        try:
            await self._check_csrf(credentials)
            try:
                outcome = await self._verify(email, credentials.password)
            except BackendRejectedError as exc:
                if exc.consumes_attempt:
                    await self.rate_limiter.record_attempt(attempt.identifier, reserved=True)
                    settled = True
                raise
            await self.rate_limiter.release(
                attempt.identifier, clear=self.settings.reset_rate_limit_on_success
            )
            settled = True
        finally:
            if not settled:
                await self.rate_limiter.release(attempt.identifier)

        return await self._complete(credentials, outcome.user, attempt)

    def _screen_input(self, credentials: LoginCredentials) -> str:
        """Sanitize the email and scan both raw fields; returns the clean email."""
        email = sanitize_input(credentials.email, "email")
        threats = merge_reports(
            detect_suspicious_input(credentials.email),
            detect_suspicious_input(credentials.password),
        )
        detail = {"threats": threats.threats} if threats.is_suspicious else {}
        if email is None:
            flags = ["invalid_email_format"]
            if threats.is_suspicious:
                flags.append("suspicious_input")
            raise InvalidEmailError(
                INVALID_EMAIL_MESSAGE, warnings=threats.threats, flags=flags, detail=detail
            )
        if threats.is_suspicious:
            raise SuspiciousInputError(
                SUSPICIOUS_INPUT_MESSAGE, warnings=threats.threats, detail=detail
            )
        return email

    async def _check_csrf(self, credentials: LoginCredentials) -> None:
        if not credentials.csrf_token:
            if self.settings.require_csrf_token:
                raise CsrfViolationError(CSRF_MISSING_MESSAGE)
            return
        stored = await self.csrf_source.get_stored_token() if self.csrf_source else None
        if not validate_token(credentials.csrf_token, stored):
            raise CsrfViolationError(CSRF_INVALID_MESSAGE)

    async def _verify(self, email: str, password: str) -> VerificationResult:
        timeout = self.settings.verification_timeout_seconds
        try:
            outcome = await asyncio.wait_for(self.verifier.verify(email, password), timeout)
        except asyncio.TimeoutError as exc:
            raise VerificationTimeoutError(
                TIMEOUT_MESSAGE, detail={"timeout_seconds": timeout}
            ) from exc
        except Exception as exc:
            error = sanitize_error_message(str(exc))
            logger.warning(
                "credential_backend_error", error_type=type(exc).__name__, error=error
            )
            raise BackendUnavailableError(
                BACKEND_UNAVAILABLE_MESSAGE,
                detail={"error_type": type(exc).__name__, "error": error},
            ) from exc

        if not outcome.success:
            backend_message = outcome.error_message or BACKEND_DEFAULT_MESSAGE
            message = (
                backend_message
                if self.settings.expose_backend_errors
                else GENERIC_CREDENTIALS_MESSAGE
            )
            raise BackendRejectedError(message, detail={"error": backend_message})
        if not outcome.session or outcome.user is None:
            raise NoSessionError(NO_SESSION_MESSAGE)
        return outcome

    async def _complete(
        self, credentials: LoginCredentials, user: AuthenticatedUser, attempt: _Attempt
    ) -> LoginResult:
        strength = evaluate_password(credentials.password, self.settings.password_min_length)
        if strength.is_weak:
            attempt.warnings.append(WEAK_PASSWORD_WARNING)
            attempt.warnings.extend(strength.feedback)
            attempt.flags.append("weak_password")

        metadata = {
            "user_id": user.id,
            "remember_me": credentials.remember_me,
            "device_fingerprint": credentials.device_fingerprint,
        }
        if await self.check_mfa_requirement(user):
            challenge = await self.sessions.issue_mfa_challenge(user.id)
            self._emit(
                LOGIN_SUCCESS,
                attempt,
                True,
                [*attempt.flags, "mfa_required"],
                {**metadata, "requires_mfa": True, "duration_ms": _elapsed_ms(attempt)},
            )
            return LoginResult.mfa_required(challenge.id, attempt.warnings)

        session = await self.sessions.issue_session(user.id)
        self._emit(
            LOGIN_SUCCESS,
            attempt,
            True,
            attempt.flags,
            {**metadata, "requires_mfa": False, "duration_ms": _elapsed_ms(attempt)},
        )
        return LoginResult.authenticated(session, user, attempt.warnings)


def _coerce_credentials(raw: Union[LoginCredentials, Mapping[str, Any]]) -> LoginCredentials:
    if isinstance(raw, LoginCredentials):
        return raw
    try:
        return LoginCredentials.model_validate(dict(raw))
    except (ValidationError, TypeError, ValueError) as exc:
        raise InputRejectedError(
            INVALID_REQUEST_MESSAGE, detail={"error_type": type(exc).__name__}
        ) from exc


def _raw_email(raw: Any) -> str:
    if isinstance(raw, LoginCredentials):
        return raw.email
    if isinstance(raw, Mapping):
        value = raw.get("email")
        return value if isinstance(value, str) else ""
    return ""


def _elapsed_ms(attempt: _Attempt) -> float:
    return round((time.perf_counter() - attempt.started) * 1000, 2)
