from __future__ import annotations

import hashlib
from datetime import datetime, timedelta
from typing import Optional, Protocol

from loginguard.config import LoginPolicy
from loginguard.logging import get_logger
from loginguard.service.clock import Clock, SystemClock
from loginguard.storage.common import RateLimitDecision, RateLimitWindow
from loginguard.storage.models import RateLimitEntry

logger = get_logger(__name__)


class RateLimitStore(Protocol):
    async def check(
        self, identifier: str, limits: RateLimitWindow, now: datetime
    ) -> RateLimitDecision: ...

    async def reserve(
        self, identifier: str, limits: RateLimitWindow, now: datetime
    ) -> RateLimitDecision: ...

    async def record(
        self,
        identifier: str,
        limits: RateLimitWindow,
        now: datetime,
        *,
        reserved: bool = False,
    ) -> RateLimitEntry: ...

    async def release(
        self,
        identifier: str,
        limits: RateLimitWindow,
        now: datetime,
        *,
        clear: bool = False,
    ) -> None: ...

    async def get(self, identifier: str) -> Optional[RateLimitEntry]: ...

    async def delete(self, identifier: str) -> None: ...

    async def purge_expired(self, limits: RateLimitWindow, now: datetime) -> int: ...


def rate_limit_identifier(email: str, client_ip: str) -> str:
    """Composite key scoping lockouts to one account from one address."""
    return f"{email}|{client_ip or 'unknown'}"


class RateLimiter:
    """Sliding-window attempt counter with temporary lockouts.

    An identifier may attempt while it has fewer than ``max_attempts`` recorded
    attempts inside the window. Reaching the limit blocks it until
    ``block_duration`` has passed since the last attempt, after which the entry
    is deleted and a fresh window begins. Entries whose window has lapsed are
    deleted on the next check.

    Attempts admitted by ``reserve`` but not yet settled count toward the limit,
    so parallel attempts cannot overshoot it.
    """

    def __init__(
        self,
        store: RateLimitStore,
        policy: LoginPolicy,
        *,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.clock = clock or SystemClock()
        self.policy = policy
        self._last_purge = self.clock.now()

    @property
    def policy(self) -> LoginPolicy:
        return self._policy

    @policy.setter
    def policy(self, policy: LoginPolicy) -> None:
        self._policy = policy
        self._limits = RateLimitWindow(
            max_attempts=policy.max_attempts,
            window=timedelta(milliseconds=policy.rate_limit_window_ms),
            block=timedelta(milliseconds=policy.block_duration_ms),
        )

    @property
    def limits(self) -> RateLimitWindow:
        return self._limits

    async def check(self, identifier: str) -> RateLimitDecision:
        decision = await self.store.check(identifier, self._limits, self.clock.now())
        if not decision.allowed:
            self._log_denied(identifier, decision)
        return decision

    async def reserve(self, identifier: str) -> RateLimitDecision:
        """Admit one attempt, counting attempts still awaiting the backend.

        An admitted attempt must later be settled with ``record_attempt(...,
        reserved=True)`` or ``release``.
        """
        decision = await self.store.reserve(identifier, self._limits, self.clock.now())
        if not decision.allowed:
            self._log_denied(identifier, decision)
        return decision

    def _log_denied(self, identifier: str, decision: RateLimitDecision) -> None:
        logger.info(
            "rate_limit_denied",
            identifier_hash=_fingerprint(identifier),
            retry_after_seconds=decision.retry_after_seconds,
        )

    async def is_allowed(self, identifier: str) -> bool:
        return (await self.check(identifier)).allowed

    async def record_attempt(self, identifier: str, *, reserved: bool = False) -> RateLimitEntry:
        entry = await self.store.record(
            identifier, self._limits, self.clock.now(), reserved=reserved
        )
        if entry.blocked and entry.attempts == self._limits.max_attempts:
            logger.warning(
                "rate_limit_lockout_triggered",
                identifier_hash=_fingerprint(identifier),
                attempts=entry.attempts,
            )
        return entry

    async def release(self, identifier: str, *, clear: bool = False) -> None:
        await self.store.release(identifier, self._limits, self.clock.now(), clear=clear)

    async def snapshot(self, identifier: str) -> Optional[RateLimitEntry]:
        return await self.store.get(identifier)

    async def reset(self, identifier: str) -> None:
        await self.store.delete(identifier)

    async def purge_expired(self) -> int:
        now = self.clock.now()
        self._last_purge = now
        return await self.store.purge_expired(self._limits, now)

    async def maybe_purge(self, interval_minutes: int = 5) -> int:
        """Purge stale entries if the interval has elapsed since the last purge."""
        if (self.clock.now() - self._last_purge).total_seconds() >= interval_minutes * 60:
            return await self.purge_expired()
        return 0


def _fingerprint(identifier: str) -> str:
    return hashlib.sha256(identifier.encode()).hexdigest()[:12]
