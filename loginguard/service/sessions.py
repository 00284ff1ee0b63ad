from __future__ import annotations

import secrets
from datetime import datetime, timedelta
from typing import Optional, Protocol

from loginguard.logging import get_logger
from loginguard.service.clock import Clock, SystemClock
from loginguard.storage.models import MfaChallenge, SessionRecord

logger = get_logger(__name__)

SESSION_NAMESPACE = "session"
MFA_NAMESPACE = "mfa"

# 32 random bytes, URL-safe encoded
TOKEN_BYTES = 32


class SessionStore(Protocol):
    async def put(self, namespace: str, record: SessionRecord) -> None: ...

    async def get(self, namespace: str, token: str) -> Optional[SessionRecord]: ...

    async def pop(self, namespace: str, token: str) -> Optional[SessionRecord]: ...

    async def purge_expired(self, now: datetime) -> int: ...


class SessionAuthority:
    """Mints sessions and MFA challenges with a fixed lifetime.

    Challenges live in their own namespace: a challenge token never resolves as
    a session, and is removed the first time it is consumed.
    """

    def __init__(
        self,
        store: SessionStore,
        session_timeout: timedelta,
        *,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.session_timeout = session_timeout
        self.clock = clock or SystemClock()
        self._last_cleanup = self.clock.now()

    async def _issue(self, namespace: str, record_cls, user_id: str) -> SessionRecord:
        now = self.clock.now()
        record = record_cls.new(secrets.token_urlsafe(TOKEN_BYTES), user_id, now, self.session_timeout)
        await self.store.put(namespace, record)
        return record

    async def issue_session(self, user_id: str) -> SessionRecord:
        record = await self._issue(SESSION_NAMESPACE, SessionRecord, user_id)
        logger.info("session_issued", user_id=user_id, expires_at=record.expires_at.isoformat())
        return record

    async def issue_mfa_challenge(self, user_id: str) -> MfaChallenge:
        record = await self._issue(MFA_NAMESPACE, MfaChallenge, user_id)
        logger.info("mfa_challenge_issued", user_id=user_id, expires_at=record.expires_at.isoformat())
        return record

    async def get_session(self, token: str) -> Optional[SessionRecord]:
        record = await self.store.get(SESSION_NAMESPACE, token)
        if record is None:
            return None
        if record.is_expired(self.clock.now()):
            await self.store.pop(SESSION_NAMESPACE, token)
            return None
        return record

    async def consume_mfa_challenge(self, token: str) -> Optional[MfaChallenge]:
        record = await self.store.pop(MFA_NAMESPACE, token)
        if record is None or record.is_expired(self.clock.now()):
            return None
        return record

    async def purge_expired(self) -> int:
        now = self.clock.now()
        cleaned = await self.store.purge_expired(now)
        self._last_cleanup = now
        if cleaned:
            logger.debug("expired_sessions_purged", count=cleaned)
        return cleaned

    async def maybe_cleanup(self, interval_minutes: int = 5) -> int:
        """Run cleanup if interval has elapsed since last cleanup.

        Returns:
            Number of entries cleaned, or 0 if cleanup was skipped
        """
        now = self.clock.now()
        if (now - self._last_cleanup).total_seconds() >= interval_minutes * 60:
            return await self.purge_expired()
        return 0
