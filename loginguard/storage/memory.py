from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, Optional

from loginguard.logging import get_logger
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
from loginguard.storage.models import RateLimitEntry, SessionRecord

logger = get_logger(__name__)


class InMemoryRateLimitStore:
    """Process-local rate-limit entries keyed by identifier.

    Every read-modify-write runs under one lock and never awaits while holding
    it, so concurrent attempts for the same identifier cannot interleave.
    """

    def __init__(self) -> None:
        self._entries: Dict[str, RateLimitEntry] = {}
        self._lock = threading.Lock()

    def _store(self, identifier: str, entry: Optional[RateLimitEntry]) -> None:
        if entry is None:
            self._entries.pop(identifier, None)
        else:
            self._entries[identifier] = entry

    async def check(
        self, identifier: str, limits: RateLimitWindow, now: datetime
    ) -> RateLimitDecision:
        with self._lock:
            entry = refresh_entry(self._entries.get(identifier), limits, now)
            self._store(identifier, entry)
            decision, _ = evaluate_entry(entry, limits, now)
            return decision

    async def reserve(
        self, identifier: str, limits: RateLimitWindow, now: datetime
    ) -> RateLimitDecision:
        with self._lock:
            decision, entry = reserve_attempt(self._entries.get(identifier), limits, now)
            self._store(identifier, entry)
            return decision

    async def record(
        self,
        identifier: str,
        limits: RateLimitWindow,
        now: datetime,
        *,
        reserved: bool = False,
    ) -> RateLimitEntry:
        with self._lock:
            entry = apply_attempt(self._entries.get(identifier), limits, now, reserved=reserved)
            self._entries[identifier] = entry
            return replace(entry)

    async def release(
        self,
        identifier: str,
        limits: RateLimitWindow,
        now: datetime,
        *,
        clear: bool = False,
    ) -> None:
        with self._lock:
            entry = release_attempt(self._entries.get(identifier), limits, now, clear=clear)
            self._store(identifier, entry)

    async def get(self, identifier: str) -> Optional[RateLimitEntry]:
        with self._lock:
            entry = self._entries.get(identifier)
            return replace(entry) if entry else None

    async def delete(self, identifier: str) -> None:
        with self._lock:
            self._entries.pop(identifier, None)

    async def purge_expired(self, limits: RateLimitWindow, now: datetime) -> int:
        with self._lock:
            expired = [
                key for key, entry in self._entries.items()
                if is_entry_expired(entry, limits, now)
            ]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.debug("rate_limit_entries_purged", count=len(expired))
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class InMemorySessionStore:
    """Sessions and MFA challenges held in separate namespaces."""

    def __init__(self) -> None:
        self._records: Dict[str, Dict[str, SessionRecord]] = {}
        self._lock = threading.Lock()

    async def put(self, namespace: str, record: SessionRecord) -> None:
        with self._lock:
            bucket = self._records.setdefault(namespace, {})
            if record.id in bucket:
                raise ValueError(f"duplicate {namespace} token")
            bucket[record.id] = replace(record)

    async def get(self, namespace: str, token: str) -> Optional[SessionRecord]:
        with self._lock:
            record = self._records.get(namespace, {}).get(token)
            return replace(record) if record else None

    async def pop(self, namespace: str, token: str) -> Optional[SessionRecord]:
        with self._lock:
            return self._records.get(namespace, {}).pop(token, None)

    async def purge_expired(self, now: datetime) -> int:
        cleaned = 0
        with self._lock:
            for bucket in self._records.values():
                expired = [token for token, rec in bucket.items() if rec.is_expired(now)]
                for token in expired:
                    del bucket[token]
                cleaned += len(expired)
        return cleaned

    def count(self, namespace: str) -> int:
        with self._lock:
            return len(self._records.get(namespace, {}))
