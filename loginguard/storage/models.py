from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional


@dataclass
class RateLimitEntry:
    attempts: int
    last_attempt_at: datetime
    blocked: bool = False
    # Attempts admitted but not yet settled by the backend
    pending: int = 0


@dataclass
class SessionRecord:
    id: str
    user_id: str
    created_at: datetime
    expires_at: datetime

    @classmethod
    def new(cls, token: str, user_id: str, now: datetime, ttl: timedelta) -> "SessionRecord":
        return cls(id=token, user_id=user_id, created_at=now, expires_at=now + ttl)

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass
class MfaChallenge(SessionRecord):
    """Right to submit a second factor; grants no access by itself."""


@dataclass
class AuthenticatedUser:
    id: str
    email: str
    role: Optional[str] = None
