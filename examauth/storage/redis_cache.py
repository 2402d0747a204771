from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import redis.asyncio as aioredis
from redis import Redis

from examauth.storage.models import SsoState


class RedisCache:
    """Redis-backed SSO state storage shared across service instances."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Atomic check-and-mark: only a pending, unexpired state gets consumed_at
    _CONSUME_STATE_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
if redis.call('EXISTS', key) == 0 then
  return nil
end
if redis.call('HEXISTS', key, 'consumed_at') == 1 then
  return nil
end
local expires_ts = tonumber(redis.call('HGET', key, 'expires_ts'))
if expires_ts == nil or expires_ts <= now then
  return nil
end
redis.call('HSET', key, 'consumed_at', ARGV[2])
return redis.call('HGETALL', key)
"""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        retention_seconds: int = 3600,
    ):
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.retention_seconds = retention_seconds
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._consume_state = self.client.register_script(self._CONSUME_STATE_SCRIPT)

    @staticmethod
    def _key(state: str) -> str:
        return f"auth:sso_state:{state}"

    @staticmethod
    def _as_utc(value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    @classmethod
    def _to_hash(cls, record: SsoState) -> Dict[str, str]:
        expires_at = cls._as_utc(record.expires_at)
        mapping = {
            "redirect_uri": record.redirect_uri,
            "created_at": cls._as_utc(record.created_at).isoformat(),
            "expires_at": expires_at.isoformat(),
            "expires_ts": str(expires_at.timestamp()),
        }
        if record.code_verifier:
            mapping["code_verifier"] = record.code_verifier
        if record.consumed_at:
            mapping["consumed_at"] = cls._as_utc(record.consumed_at).isoformat()
        return mapping

    @staticmethod
    def _from_hash(state: str, data: Dict[str, Any]) -> Optional[SsoState]:
        try:
            consumed_raw = data.get("consumed_at")
            return SsoState(
                state=state,
                redirect_uri=data["redirect_uri"],
                code_verifier=data.get("code_verifier") or None,
                created_at=datetime.fromisoformat(data["created_at"]),
                expires_at=datetime.fromisoformat(data["expires_at"]),
                consumed_at=datetime.fromisoformat(consumed_raw) if consumed_raw else None,
            )
        except (KeyError, TypeError, ValueError):
            # Corrupted entries are treated as unknown states
            return None

    @staticmethod
    def _pairs_to_dict(pairs: List[Any]) -> Dict[str, Any]:
        return {pairs[i]: pairs[i + 1] for i in range(0, len(pairs) - 1, 2)}

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_timeout=self.socket_timeout,
            socket_connect_timeout=self.socket_timeout,
        )
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def save_sso_state(self, record: SsoState) -> None:
        key = self._key(record.state)
        pipe = self.client.pipeline()
        pipe.hset(key, mapping=self._to_hash(record))
        # Keep the key past its expiry so reuse and expiry stay distinguishable
        pipe.expire(key, self.retention_seconds)
        await pipe.execute()

    async def get_sso_state(self, state: str) -> Optional[SsoState]:
        data = await self.client.hgetall(self._key(state))
        if not data:
            return None
        return self._from_hash(state, data)

    async def mark_sso_state_consumed(self, state: str, now: datetime) -> Optional[SsoState]:
        now = self._as_utc(now)
        result = await self._consume_state(
            keys=[self._key(state)], args=[now.timestamp(), now.isoformat()]
        )
        if not result:
            return None
        return self._from_hash(state, self._pairs_to_dict(list(result)))

    async def close(self) -> None:
        """Close the Redis connection pool."""
        await self.client.aclose()
