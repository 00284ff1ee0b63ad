from __future__ import annotations

from datetime import datetime
from typing import Optional


class ServiceError(Exception):
    """Base class for login-pipeline exceptions.

    Each subclass carries the HTTP status a transport layer would map it to and
    a stable ``error_code``. Gate failures additionally carry the audit
    ``stage`` tag and the audit event they are reported under:

    - ``invalid_email_format`` / ``suspicious_input``: input rejection (400)
    - ``rate_limited`` (429) / ``csrf_violation`` (403): policy rejection
    - ``auth_failed`` / ``no_session`` / ``backend_unavailable`` /
      ``verification_timeout``: backend rejection
    - ``unexpected_error`` (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"
    audit_event: str = "login_attempt"
    consumes_attempt: bool = False

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
        warnings: Optional[list[str]] = None,
        flags: Optional[list[str]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}
        self.warnings = list(warnings or [])
        self.flags = list(flags) if flags else [self.error_code]


class InputRejectedError(ServiceError):
    """Malformed or hostile input; never consumes a rate-limit slot (400)."""
    status_code = 400
    error_code = "invalid_input"


class InvalidEmailError(InputRejectedError):
    error_code = "invalid_email_format"


class SuspiciousInputError(InputRejectedError):
    error_code = "suspicious_input"


class PolicyRejectedError(ServiceError):
    """Rejected by local policy; retryable after a cool-down."""
    status_code = 403
    error_code = "policy_rejected"


class RateLimitedError(PolicyRejectedError):
    """Identifier is locked out (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(
        self,
        message: str,
        *,
        retry_after_seconds: Optional[int] = None,
        locked_until: Optional[datetime] = None,
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)
        self.retry_after_seconds = retry_after_seconds
        self.locked_until = locked_until


class CsrfViolationError(PolicyRejectedError):
    """CSRF token missing or mismatched (403)."""
    status_code = 403
    error_code = "csrf_violation"


class BackendRejectedError(ServiceError):
    """Credential backend rejected the attempt (401)."""
    status_code = 401
    error_code = "auth_failed"
    audit_event = "login_failure"
    consumes_attempt = True


class NoSessionError(BackendRejectedError):
    """Backend reported success without returning a session or user."""
    error_code = "no_session"
    consumes_attempt = False


class BackendUnavailableError(BackendRejectedError):
    """Credential backend raised or could not be reached (503)."""
    status_code = 503
    error_code = "backend_unavailable"


class VerificationTimeoutError(BackendRejectedError):
    """Credential backend did not answer in time; retryable, no lockout (504)."""
    status_code = 504
    error_code = "verification_timeout"
    consumes_attempt = False


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "unexpected_error"
    audit_event = "login_failure"


__all__ = [
    "ServiceError",
    "InputRejectedError",
    "InvalidEmailError",
    "SuspiciousInputError",
    "PolicyRejectedError",
    "RateLimitedError",
    "CsrfViolationError",
    "BackendRejectedError",
    "NoSessionError",
    "BackendUnavailableError",
    "VerificationTimeoutError",
    "ServerError",
]
