from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from loginguard.storage.models import AuthenticatedUser, RateLimitEntry, SessionRecord

# Upper bounds on raw input before any scanning happens
MAX_EMAIL_INPUT_LENGTH = 1024
MAX_PASSWORD_INPUT_LENGTH = 4096


class LoginCredentials(BaseModel):
    """One login attempt as submitted by the caller."""

    email: str = Field(..., max_length=MAX_EMAIL_INPUT_LENGTH)
    password: str = Field(..., max_length=MAX_PASSWORD_INPUT_LENGTH, repr=False)
    csrf_token: Optional[str] = Field(None, repr=False)
    remember_me: bool = False
    device_fingerprint: Optional[str] = None

    model_config = ConfigDict(frozen=True, extra="ignore")


class LoginResult(BaseModel):
    """Terminal outcome of ``secure_login``.

    Exactly one shape holds: a session, an MFA challenge, or an error.
    """

    success: bool
    session: Optional[SessionRecord] = None
    user: Optional[AuthenticatedUser] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    security_warnings: List[str] = Field(default_factory=list)
    requires_mfa: Optional[bool] = None
    mfa_token: Optional[str] = Field(None, repr=False)
    retry_after_seconds: Optional[int] = None
    locked_until: Optional[datetime] = None

    @model_validator(mode="after")
    def _check_shape(self):
        has_session = self.session is not None
        has_challenge = bool(self.requires_mfa) and bool(self.mfa_token)
        if self.success:
            if self.error:
                raise ValueError("a successful result cannot carry an error")
            if has_session == has_challenge:
                raise ValueError("a successful result carries either a session or an MFA challenge")
            if has_session and (self.requires_mfa or self.mfa_token):
                raise ValueError("a session result cannot carry an MFA token")
        else:
            if not self.error:
                raise ValueError("a failed result must carry an error message")
            if has_session or self.mfa_token or self.requires_mfa or self.user is not None:
                raise ValueError("a failed result cannot carry a session, user or MFA challenge")
        return self

    @classmethod
    def failure(
        cls,
        error: str,
        *,
        error_code: Optional[str] = None,
        warnings: Optional[List[str]] = None,
        retry_after_seconds: Optional[int] = None,
        locked_until: Optional[datetime] = None,
    ) -> "LoginResult":
        return cls(
            success=False,
            error=error,
            error_code=error_code,
            security_warnings=list(warnings or []),
            retry_after_seconds=retry_after_seconds,
            locked_until=locked_until,
        )

    @classmethod
    def authenticated(
        cls, session: SessionRecord, user: AuthenticatedUser, warnings: List[str]
    ) -> "LoginResult":
        return cls(success=True, session=session, user=user, security_warnings=list(warnings))

    @classmethod
    def mfa_required(cls, mfa_token: str, warnings: List[str]) -> "LoginResult":
        return cls(
            success=True,
            requires_mfa=True,
            mfa_token=mfa_token,
            security_warnings=list(warnings),
        )


class RateLimitSnapshot(BaseModel):
    attempts: int
    last_attempt_at: datetime
    blocked: bool
    pending: int = 0

    @classmethod
    def from_entry(cls, entry: RateLimitEntry) -> "RateLimitSnapshot":
        return cls(
            attempts=entry.attempts,
            last_attempt_at=entry.last_attempt_at,
            blocked=entry.blocked,
            pending=entry.pending,
        )
