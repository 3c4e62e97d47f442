from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Optional

import redis.asyncio as aioredis
from redis import Redis

from tonotes.storage.models import Session


class RedisCache:
    """Thin Redis wrapper for the token blacklist and the session read cache."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @staticmethod
    def _ttl_seconds(expires_at: datetime) -> int:
        """Seconds until ``expires_at``, clamped to at least one."""

        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        else:
            expires_at = expires_at.astimezone(timezone.utc)
        return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def close(self) -> None:
        await self.client.aclose()

    # blacklist -------------------------------------------------------------

    @staticmethod
    def blacklist_key(kind: str, token: str) -> str:
        return f"blacklist:{kind}:{token}"

    async def blacklist_token(self, kind: str, token: str, ttl_seconds: int) -> None:
        if ttl_seconds > 0:
            await self.client.set(self.blacklist_key(kind, token), "true", ex=ttl_seconds)

    async def is_blacklisted(self, token: str) -> bool:
        """True when the raw token is revoked under either token class."""
        found = await self.client.exists(
            self.blacklist_key("access", token), self.blacklist_key("refresh", token)
        )
        return bool(found)

    # session cache ---------------------------------------------------------

    async def cache_session(self, session: Session) -> None:
        ttl = self._ttl_seconds(session.expires_at)
        user_sessions_key = f"user_sessions:{session.user_id}"
        pipe = self.client.pipeline()
        pipe.set(f"session:{session.id}", json.dumps(session.to_dict()), ex=ttl)
        pipe.sadd(user_sessions_key, session.id)
        pipe.expire(user_sessions_key, ttl)
        await pipe.execute()

    async def get_cached_session(self, session_id: str) -> Optional[Session]:
        raw = await self.client.get(f"session:{session_id}")
        if not raw:
            return None
        return Session.from_dict(json.loads(raw))

    async def evict_session(self, session_id: str, user_id: Optional[str] = None) -> None:
        pipe = self.client.pipeline()
        pipe.delete(f"session:{session_id}")
        if user_id:
            pipe.srem(f"user_sessions:{user_id}", session_id)
        await pipe.execute()

    async def evict_user_sessions(self, user_id: str) -> int:
        """Drop every cached session for a user.

        Returns:
            Number of cached sessions removed
        """
        user_sessions_key = f"user_sessions:{user_id}"
        session_ids = await self.client.smembers(user_sessions_key)
        if not session_ids:
            return 0
        pipe = self.client.pipeline()
        for session_id in session_ids:
            pipe.delete(f"session:{session_id}")
        pipe.delete(user_sessions_key)
        await pipe.execute()
        return len(session_ids)
