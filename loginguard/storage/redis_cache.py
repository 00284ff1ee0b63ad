from __future__ import annotations

import hashlib
import json
import math
from datetime import datetime, timezone
from typing import Optional

import redis.asyncio as aioredis
from redis import Redis

from loginguard.logging import get_logger
from loginguard.storage.common import ALLOW, RateLimitDecision, RateLimitWindow
from loginguard.storage.models import MfaChallenge, RateLimitEntry, SessionRecord

logger = get_logger(__name__)


def _to_epoch(value: datetime) -> float:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp()


def _from_epoch(value: float | str) -> datetime:
    return datetime.fromtimestamp(float(value), tz=timezone.utc)


class RedisCache:
    """Thin Redis wrapper shared by the rate-limit and session stores."""

    # Loads KEYS[1] and restarts it when its window lapsed or its block was
    # served, keeping in-flight reservations. ARGV: now, max, window, block, ttl.
    # save() writes the entry back, or deletes it once nothing is left.
    _ENTRY_PRELUDE = """
local data = redis.call('HMGET', KEYS[1], 'attempts', 'last', 'blocked', 'pending')
local attempts = tonumber(data[1])
local last = tonumber(data[2])
local last_raw = data[2]
local blocked = data[3] == '1'
local pending = tonumber(data[4]) or 0
local now = tonumber(ARGV[1])
local max_attempts = tonumber(ARGV[2])
local window = tonumber(ARGV[3])
local block = tonumber(ARGV[4])
local ttl = tonumber(ARGV[5])
local exists = attempts ~= nil and last ~= nil
local expired = false
if not exists then
  attempts = 0
  last = now
  last_raw = ARGV[1]
  blocked = false
  pending = 0
else
  local elapsed = now - last
  if (blocked and elapsed >= block) or ((not blocked) and elapsed >= window) then
    expired = true
    attempts = 0
    blocked = false
    last = now
    last_raw = ARGV[1]
  end
end
local function save()
  if attempts == 0 and pending == 0 and not blocked then
    redis.call('DEL', KEYS[1])
    return
  end
  local flag = '0'
  if blocked then
    flag = '1'
  end
  redis.call('HSET', KEYS[1], 'attempts', attempts, 'last', last_raw, 'blocked', flag, 'pending', pending)
  redis.call('EXPIRE', KEYS[1], ttl)
end
"""

    # Returns {allowed, reset_at_epoch}; reset_at is a string to keep precision.
    _CHECK_SCRIPT = _ENTRY_PRELUDE + """
if expired then
  save()
end
if blocked then
  return {0, tostring(last + block)}
end
if attempts >= max_attempts then
  return {0, tostring(last + window)}
end
return {1, '0'}
"""

    # Admit one attempt if recorded plus pending attempts leave room.
    _RESERVE_SCRIPT = _ENTRY_PRELUDE + """
if blocked then
  return {0, tostring(last + block)}
end
if attempts >= max_attempts then
  return {0, tostring(last + window)}
end
if attempts + pending >= max_attempts then
  if expired then
    save()
  end
  return {0, ARGV[1]}
end
pending = pending + 1
save()
return {1, '0'}
"""

    # Count one attempt; ARGV[6] == '1' settles a reservation.
    _RECORD_SCRIPT = _ENTRY_PRELUDE + """
if ARGV[6] == '1' and pending > 0 then
  pending = pending - 1
end
attempts = attempts + 1
last_raw = ARGV[1]
if attempts >= max_attempts then
  blocked = true
end
save()
local flag = '0'
if blocked then
  flag = '1'
end
return {attempts, flag}
"""

    # Drop one reservation; ARGV[6] == '1' also clears recorded failures.
    _RELEASE_SCRIPT = _ENTRY_PRELUDE + """
if not exists then
  return 0
end
if pending > 0 then
  pending = pending - 1
end
if ARGV[6] == '1' then
  attempts = 0
  blocked = false
end
save()
return pending
"""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 5.0,
        prefix: str = "loginguard",
        client=None,
    ):
        self.redis_url = redis_url
        self.prefix = prefix
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._check_script = self.client.register_script(self._CHECK_SCRIPT)
        self._reserve_script = self.client.register_script(self._RESERVE_SCRIPT)
        self._record_script = self.client.register_script(self._RECORD_SCRIPT)
        self._release_script = self.client.register_script(self._RELEASE_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a temporary loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def close(self) -> None:
        await self.client.aclose()

    def rate_key(self, identifier: str) -> str:
        """Hash identifiers so delimiters inside emails cannot collide keys."""
        digest = hashlib.sha256(identifier.encode()).hexdigest()
        return f"{self.prefix}:rate:{digest}"

    def session_key(self, namespace: str, token: str) -> str:
        return f"{self.prefix}:{namespace}:{token}"


class RedisRateLimitStore:
    """Rate-limit entries shared across instances; atomic through Lua."""

    def __init__(self, cache: RedisCache) -> None:
        self.cache = cache

    @staticmethod
    def _script_args(limits: RateLimitWindow, now: datetime) -> list:
        return [
            repr(_to_epoch(now)),
            limits.max_attempts,
            limits.window.total_seconds(),
            limits.block.total_seconds(),
            max(1, math.ceil(limits.retention.total_seconds())),
        ]

    async def _decide(
        self, script, identifier: str, limits: RateLimitWindow, now: datetime
    ) -> RateLimitDecision:
        allowed, reset_at = await script(
            keys=[self.cache.rate_key(identifier)],
            args=self._script_args(limits, now),
        )
        if int(allowed):
            return ALLOW
        return RateLimitDecision.deny(_from_epoch(reset_at), now)

    async def check(
        self, identifier: str, limits: RateLimitWindow, now: datetime
    ) -> RateLimitDecision:
        return await self._decide(self.cache._check_script, identifier, limits, now)

    async def reserve(
        self, identifier: str, limits: RateLimitWindow, now: datetime
    ) -> RateLimitDecision:
        return await self._decide(self.cache._reserve_script, identifier, limits, now)

    async def record(
        self,
        identifier: str,
        limits: RateLimitWindow,
        now: datetime,
        *,
        reserved: bool = False,
    ) -> RateLimitEntry:
        attempts, flag = await self.cache._record_script(
            keys=[self.cache.rate_key(identifier)],
            args=[*self._script_args(limits, now), "1" if reserved else "0"],
        )
        return RateLimitEntry(
            attempts=int(attempts), last_attempt_at=now, blocked=str(flag) == "1"
        )

    async def release(
        self,
        identifier: str,
        limits: RateLimitWindow,
        now: datetime,
        *,
        clear: bool = False,
    ) -> None:
        await self.cache._release_script(
            keys=[self.cache.rate_key(identifier)],
            args=[*self._script_args(limits, now), "1" if clear else "0"],
        )

    async def get(self, identifier: str) -> Optional[RateLimitEntry]:
        data = await self.cache.client.hgetall(self.cache.rate_key(identifier))
        if not data or "attempts" not in data or "last" not in data:
            return None
        return RateLimitEntry(
            attempts=int(data["attempts"]),
            last_attempt_at=_from_epoch(data["last"]),
            blocked=data.get("blocked") == "1",
            pending=int(data.get("pending") or 0),
        )

    async def delete(self, identifier: str) -> None:
        await self.cache.client.delete(self.cache.rate_key(identifier))

    async def purge_expired(self, limits: RateLimitWindow, now: datetime) -> int:
        # Keys carry a TTL of max(window, block); Redis evicts them itself
        return 0


class RedisSessionStore:
    """Sessions and MFA challenges as JSON values whose TTL matches their expiry."""

    _TYPES = {"mfa": MfaChallenge}

    def __init__(self, cache: RedisCache) -> None:
        self.cache = cache

    def _decode(self, namespace: str, token: str, raw: Optional[str]) -> Optional[SessionRecord]:
        if not raw:
            return None
        try:
            payload = json.loads(raw)
        except ValueError as exc:
            logger.warning("session_record_parse_failed", namespace=namespace, error=str(exc))
            return None
        record_cls = self._TYPES.get(namespace, SessionRecord)
        return record_cls(
            id=token,
            user_id=payload["user_id"],
            created_at=_from_epoch(payload["created_at"]),
            expires_at=_from_epoch(payload["expires_at"]),
        )

    async def put(self, namespace: str, record: SessionRecord) -> None:
        ttl = max(1, math.ceil((record.expires_at - record.created_at).total_seconds()))
        payload = json.dumps(
            {
                "user_id": record.user_id,
                "created_at": _to_epoch(record.created_at),
                "expires_at": _to_epoch(record.expires_at),
            }
        )
        stored = await self.cache.client.set(
            self.cache.session_key(namespace, record.id), payload, ex=ttl, nx=True
        )
        if not stored:
            raise ValueError(f"duplicate {namespace} token")

    async def get(self, namespace: str, token: str) -> Optional[SessionRecord]:
        raw = await self.cache.client.get(self.cache.session_key(namespace, token))
        return self._decode(namespace, token, raw)

    async def pop(self, namespace: str, token: str) -> Optional[SessionRecord]:
        raw = await self.cache.client.getdel(self.cache.session_key(namespace, token))
        return self._decode(namespace, token, raw)

    async def purge_expired(self, now: datetime) -> int:
        return 0
