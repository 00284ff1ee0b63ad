"""Tests for sliding-window rate limiting and lockouts."""

import asyncio
import threading
from datetime import timedelta

import pytest

from loginguard.config import LoginPolicy
from loginguard.service.clock import ManualClock
from loginguard.service.rate_limit import RateLimiter, rate_limit_identifier
from loginguard.storage.common import (
    RateLimitDecision,
    RateLimitWindow,
    apply_attempt,
    evaluate_entry,
    is_entry_expired,
    refresh_entry,
    release_attempt,
    reserve_attempt,
)
from loginguard.storage.memory import InMemoryRateLimitStore
from loginguard.storage.models import RateLimitEntry

IDENTIFIER = "a@b.com|1.2.3.4"

LIMITS = RateLimitWindow(
    max_attempts=5,
    window=timedelta(minutes=15),
    block=timedelta(minutes=30),
)


@pytest.fixture
def limiter(clock):
    return RateLimiter(InMemoryRateLimitStore(), LoginPolicy(), clock=clock)


class TestIdentifier:
    def test_joins_email_and_ip(self):
        assert rate_limit_identifier("a@b.com", "1.2.3.4") == IDENTIFIER

    def test_missing_ip_is_unknown(self):
        assert rate_limit_identifier("a@b.com", "") == "a@b.com|unknown"


class TestEvaluateEntry:
    """Decision rules shared by every store."""

    def test_no_entry_is_allowed(self, clock):
        decision, delete = evaluate_entry(None, LIMITS, clock.now())

        assert decision.allowed is True
        assert delete is False

    def test_under_limit_in_window_is_allowed(self, clock):
        entry = RateLimitEntry(attempts=4, last_attempt_at=clock.now())

        decision, delete = evaluate_entry(entry, LIMITS, clock.now() + timedelta(minutes=14))

        assert decision.allowed is True
        assert delete is False

    def test_at_limit_in_window_is_denied(self, clock):
        entry = RateLimitEntry(attempts=5, last_attempt_at=clock.now())

        decision, _ = evaluate_entry(entry, LIMITS, clock.now())

        assert decision.allowed is False
        assert decision.reset_at == clock.now() + timedelta(minutes=15)

    def test_stale_window_is_deleted(self, clock):
        entry = RateLimitEntry(attempts=3, last_attempt_at=clock.now())

        decision, delete = evaluate_entry(entry, LIMITS, clock.now() + timedelta(minutes=15))

        assert decision.allowed is True
        assert delete is True

    def test_blocked_within_block_is_denied(self, clock):
        entry = RateLimitEntry(attempts=5, last_attempt_at=clock.now(), blocked=True)

        decision, delete = evaluate_entry(entry, LIMITS, clock.now() + timedelta(minutes=20))

        assert decision.allowed is False
        assert delete is False
        assert decision.retry_after_seconds == 10 * 60

    def test_served_block_is_deleted(self, clock):
        entry = RateLimitEntry(attempts=5, last_attempt_at=clock.now(), blocked=True)

        decision, delete = evaluate_entry(entry, LIMITS, clock.now() + timedelta(minutes=30))

        assert decision.allowed is True
        assert delete is True

    def test_retry_after_is_at_least_one_second(self, clock):
        decision = RateLimitDecision.deny(clock.now(), clock.now())

        assert decision.retry_after_seconds == 1


class TestApplyAttempt:
    def test_first_attempt_creates_entry(self, clock):
        entry = apply_attempt(None, LIMITS, clock.now())

        assert entry.attempts == 1
        assert entry.blocked is False
        assert entry.last_attempt_at == clock.now()

    def test_reaching_limit_blocks(self, clock):
        entry = None
        for _ in range(5):
            entry = apply_attempt(entry, LIMITS, clock.now())

        assert entry.attempts == 5
        assert entry.blocked is True

    def test_stale_entry_restarts_count(self, clock):
        entry = RateLimitEntry(attempts=4, last_attempt_at=clock.now())

        entry = apply_attempt(entry, LIMITS, clock.now() + timedelta(minutes=16))

        assert entry.attempts == 1

    def test_retention_covers_block(self, clock):
        entry = RateLimitEntry(attempts=5, last_attempt_at=clock.now(), blocked=True)

        assert is_entry_expired(entry, LIMITS, clock.now() + timedelta(minutes=29)) is False
        assert is_entry_expired(entry, LIMITS, clock.now() + timedelta(minutes=30)) is True


class TestReservations:
    """In-flight attempts hold a slot until the backend answers."""

    def test_reserve_counts_pending(self, clock):
        decision, entry = reserve_attempt(None, LIMITS, clock.now())

        assert decision.allowed is True
        assert entry.attempts == 0
        assert entry.pending == 1

    def test_reserve_denied_when_pending_fills_the_window(self, clock):
        entry = RateLimitEntry(attempts=3, last_attempt_at=clock.now(), pending=2)

        decision, kept = reserve_attempt(entry, LIMITS, clock.now())

        assert decision.allowed is False
        assert decision.retry_after_seconds == 1
        assert kept.pending == 2

    def test_reserve_denied_while_blocked(self, clock):
        entry = RateLimitEntry(attempts=5, last_attempt_at=clock.now(), blocked=True)

        decision, _ = reserve_attempt(entry, LIMITS, clock.now())

        assert decision.retry_after_seconds == 30 * 60

    def test_settling_a_reservation_moves_it_to_attempts(self, clock):
        entry = RateLimitEntry(attempts=4, last_attempt_at=clock.now(), pending=1)

        entry = apply_attempt(entry, LIMITS, clock.now(), reserved=True)

        assert entry.pending == 0
        assert entry.attempts == 5
        assert entry.blocked is True

    def test_release_of_last_reservation_deletes_entry(self, clock):
        entry = RateLimitEntry(attempts=0, last_attempt_at=clock.now(), pending=1)

        assert release_attempt(entry, LIMITS, clock.now()) is None

    def test_release_keeps_recorded_failures(self, clock):
        entry = RateLimitEntry(attempts=2, last_attempt_at=clock.now(), pending=1)

        entry = release_attempt(entry, LIMITS, clock.now())

        assert entry.attempts == 2
        assert entry.pending == 0

    def test_release_with_clear_keeps_other_reservations(self, clock):
        entry = RateLimitEntry(attempts=3, last_attempt_at=clock.now(), pending=2)

        entry = release_attempt(entry, LIMITS, clock.now(), clear=True)

        assert entry.attempts == 0
        assert entry.pending == 1

    def test_lapsed_window_keeps_pending(self, clock):
        entry = RateLimitEntry(attempts=3, last_attempt_at=clock.now(), pending=1)

        entry = refresh_entry(entry, LIMITS, clock.now() + timedelta(minutes=16))

        assert entry.attempts == 0
        assert entry.pending == 1

    def test_entry_with_pending_is_not_purged(self, clock):
        entry = RateLimitEntry(attempts=0, last_attempt_at=clock.now(), pending=1)

        assert is_entry_expired(entry, LIMITS, clock.now() + timedelta(hours=2)) is False


class TestRateLimiter:
    """RateLimiter over the in-memory store with a manual clock."""

    async def test_five_failures_then_denied(self, limiter):
        for _ in range(5):
            assert await limiter.is_allowed(IDENTIFIER) is True
            await limiter.record_attempt(IDENTIFIER)

        assert await limiter.is_allowed(IDENTIFIER) is False

    async def test_block_expires_and_entry_is_removed(self, limiter, clock):
        for _ in range(5):
            await limiter.record_attempt(IDENTIFIER)

        clock.advance(minutes=30)

        assert await limiter.is_allowed(IDENTIFIER) is True
        assert await limiter.snapshot(IDENTIFIER) is None

    async def test_attempts_age_out_of_window(self, limiter, clock):
        for _ in range(4):
            await limiter.record_attempt(IDENTIFIER)

        clock.advance(minutes=15)
        entry = await limiter.record_attempt(IDENTIFIER)

        assert entry.attempts == 1
        assert entry.blocked is False

    async def test_record_returns_copy(self, limiter):
        entry = await limiter.record_attempt(IDENTIFIER)
        entry.attempts = 99

        assert (await limiter.snapshot(IDENTIFIER)).attempts == 1

    async def test_reset_clears_entry(self, limiter):
        await limiter.record_attempt(IDENTIFIER)

        await limiter.reset(IDENTIFIER)

        assert await limiter.snapshot(IDENTIFIER) is None

    async def test_policy_change_applies_to_next_check(self, limiter):
        await limiter.record_attempt(IDENTIFIER)
        await limiter.record_attempt(IDENTIFIER)

        limiter.policy = LoginPolicy(max_attempts=2)

        assert await limiter.is_allowed(IDENTIFIER) is False
        assert limiter.limits.max_attempts == 2

    async def test_purge_removes_only_stale_entries(self, clock):
        store = InMemoryRateLimitStore()
        limiter = RateLimiter(store, LoginPolicy(), clock=clock)
        await limiter.record_attempt("old|1.1.1.1")
        clock.advance(minutes=20)
        await limiter.record_attempt("new|1.1.1.1")
        clock.advance(minutes=10)

        removed = await limiter.purge_expired()

        assert removed == 1
        assert len(store) == 1
        assert await limiter.snapshot("new|1.1.1.1") is not None

    async def test_maybe_purge_waits_for_interval(self, limiter, clock):
        await limiter.record_attempt(IDENTIFIER)
        clock.advance(minutes=31)
        # First interval check happens relative to construction time
        assert await limiter.maybe_purge(interval_minutes=60) == 0
        assert await limiter.maybe_purge(interval_minutes=5) == 1

    async def test_reserve_then_record(self, limiter):
        assert (await limiter.reserve(IDENTIFIER)).allowed is True

        entry = await limiter.record_attempt(IDENTIFIER, reserved=True)

        assert entry.attempts == 1
        assert entry.pending == 0

    async def test_reserve_then_release_leaves_nothing(self, limiter):
        await limiter.reserve(IDENTIFIER)

        await limiter.release(IDENTIFIER)

        assert await limiter.snapshot(IDENTIFIER) is None

    async def test_release_with_clear_forgets_failures(self, limiter):
        await limiter.record_attempt(IDENTIFIER)
        await limiter.reserve(IDENTIFIER)

        await limiter.release(IDENTIFIER, clear=True)

        assert await limiter.snapshot(IDENTIFIER) is None


class TestConcurrency:
    """Concurrent attempts must not lose increments."""

    async def test_concurrent_records_are_all_counted(self, limiter):
        await asyncio.gather(*(limiter.record_attempt(IDENTIFIER) for _ in range(50)))

        entry = await limiter.snapshot(IDENTIFIER)
        assert entry.attempts == 50
        assert entry.blocked is True

    def test_threaded_records_are_all_counted(self):
        clock = ManualClock()
        store = InMemoryRateLimitStore()
        limiter = RateLimiter(store, LoginPolicy(max_attempts=1000), clock=clock)
        errors = []

        def worker():
            try:
                for _ in range(50):
                    asyncio.run(limiter.record_attempt(IDENTIFIER))
            except Exception as exc:
                errors.append(exc)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        entry = asyncio.run(limiter.snapshot(IDENTIFIER))
        assert entry.attempts == 400

    async def test_concurrent_reserves_stop_at_max_attempts(self, limiter):
        decisions = await asyncio.gather(*(limiter.reserve(IDENTIFIER) for _ in range(20)))

        assert sum(d.allowed for d in decisions) == 5
        entry = await limiter.snapshot(IDENTIFIER)
        assert entry.pending == 5
        assert entry.attempts == 0

    def test_threaded_reserves_stop_at_max_attempts(self):
        store = InMemoryRateLimitStore()
        limiter = RateLimiter(store, LoginPolicy(max_attempts=10), clock=ManualClock())
        admitted = []

        def worker():
            for _ in range(10):
                admitted.append(asyncio.run(limiter.reserve(IDENTIFIER)).allowed)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert admitted.count(True) == 10
