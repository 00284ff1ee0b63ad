"""Rate-limit rules shared by the in-memory and Redis stores.

The Redis store runs the same rules inside Lua scripts; these functions are the
reference version and operate on a single entry while the caller holds its lock.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Tuple

from loginguard.storage.models import RateLimitEntry


@dataclass(frozen=True)
class RateLimitWindow:
    max_attempts: int
    window: timedelta
    block: timedelta

    @property
    def retention(self) -> timedelta:
        """How long an entry can stay relevant after its last attempt."""
        return max(self.window, self.block)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    reset_at: Optional[datetime] = None
    retry_after_seconds: int = 0

    @classmethod
    def deny(cls, reset_at: datetime, now: datetime) -> "RateLimitDecision":
        remaining = max(0.0, (reset_at - now).total_seconds())
        return cls(allowed=False, reset_at=reset_at, retry_after_seconds=max(1, math.ceil(remaining)))


ALLOW = RateLimitDecision(allowed=True)


def evaluate_entry(
    entry: Optional[RateLimitEntry], limits: RateLimitWindow, now: datetime
) -> Tuple[RateLimitDecision, bool]:
    """Decide whether an identifier may attempt a login.

    Returns the decision and whether the entry should be deleted.
    """
    if entry is None:
        return ALLOW, False
    elapsed = now - entry.last_attempt_at
    if entry.blocked:
        if elapsed < limits.block:
            return RateLimitDecision.deny(entry.last_attempt_at + limits.block, now), False
        # Block served; start a fresh window
        return ALLOW, True
    if elapsed < limits.window:
        if entry.attempts < limits.max_attempts:
            return ALLOW, False
        return RateLimitDecision.deny(entry.last_attempt_at + limits.window, now), False
    # Stale window
    return ALLOW, True


def is_vacant(entry: RateLimitEntry) -> bool:
    return entry.attempts == 0 and entry.pending == 0 and not entry.blocked


def refresh_entry(
    entry: Optional[RateLimitEntry], limits: RateLimitWindow, now: datetime
) -> Optional[RateLimitEntry]:
    """Return the entry as it stands at ``now``.

    A lapsed window or a served block restarts the count. Reservations still in
    flight survive the restart so they can settle against the new window.
    """
    if entry is None:
        return None
    _, expired = evaluate_entry(entry, limits, now)
    if not expired:
        return entry
    if entry.pending:
        return RateLimitEntry(attempts=0, last_attempt_at=now, pending=entry.pending)
    return None


def reserve_attempt(
    entry: Optional[RateLimitEntry], limits: RateLimitWindow, now: datetime
) -> Tuple[RateLimitDecision, Optional[RateLimitEntry]]:
    """Admit one attempt if recorded plus in-flight attempts leave room.

    Returns the decision and the entry to store (None to delete it).
    """
    entry = refresh_entry(entry, limits, now)
    decision, _ = evaluate_entry(entry, limits, now)
    if not decision.allowed:
        return decision, entry
    if entry is None:
        entry = RateLimitEntry(attempts=0, last_attempt_at=now)
    if entry.attempts + entry.pending >= limits.max_attempts:
        # Saturated by attempts still awaiting the backend; retry shortly
        return RateLimitDecision.deny(now, now), entry
    entry.pending += 1
    return ALLOW, entry


def apply_attempt(
    entry: Optional[RateLimitEntry],
    limits: RateLimitWindow,
    now: datetime,
    *,
    reserved: bool = False,
) -> RateLimitEntry:
    """Return the entry after counting one more attempt at ``now``.

    With ``reserved`` the attempt settles a reservation made by ``reserve_attempt``.
    """
    entry = refresh_entry(entry, limits, now)
    if entry is None:
        entry = RateLimitEntry(attempts=0, last_attempt_at=now)
    if reserved and entry.pending:
        entry.pending -= 1
    entry.attempts += 1
    entry.last_attempt_at = now
    if entry.attempts >= limits.max_attempts:
        entry.blocked = True
    return entry


def release_attempt(
    entry: Optional[RateLimitEntry],
    limits: RateLimitWindow,
    now: datetime,
    *,
    clear: bool = False,
) -> Optional[RateLimitEntry]:
    """Drop one reservation without counting it; ``clear`` also forgets recorded failures."""
    entry = refresh_entry(entry, limits, now)
    if entry is None:
        return None
    if entry.pending:
        entry.pending -= 1
    if clear:
        entry.attempts = 0
        entry.blocked = False
    return None if is_vacant(entry) else entry


def is_entry_expired(entry: RateLimitEntry, limits: RateLimitWindow, now: datetime) -> bool:
    if entry.pending:
        return False
    return now - entry.last_attempt_at >= limits.retention
