from __future__ import annotations

from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable, List, Optional

from tonotes.logging import get_logger
from tonotes.service.deadline import call_store
from tonotes.service.errors import ProtectedSessionError
from tonotes.service.user_agent import LocationResolver, parse_user_agent
from tonotes.storage.models import Session, utcnow
from tonotes.storage.redis_cache import RedisCache

if TYPE_CHECKING:
    from tonotes.service.auth import AuthStore

logger = get_logger(__name__)


class SessionRegistry:
    """Durable per-device sessions with a best-effort Redis read cache.

    The store is the source of truth. Cache failures are logged and the
    registry falls back to the store.
    """

    def __init__(
        self,
        store: "AuthStore",
        cache: Optional[RedisCache] = None,
        *,
        max_sessions: int = 5,
        ttl_hours: int = 24,
        idle_hours: int = 48,
        store_timeout: float = 10.0,
        clock: Callable[[], datetime] = utcnow,
        locator: Optional[LocationResolver] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.max_sessions = max_sessions
        self.ttl_hours = ttl_hours
        self.idle_timeout = timedelta(hours=idle_hours)
        self.store_timeout = store_timeout
        self.clock = clock
        self.locator = locator or LocationResolver()
        self.logger = logger

    async def _store(self, func, *args):
        return await call_store(func, *args, timeout=self.store_timeout)

    # cache helpers ---------------------------------------------------------

    async def _cache_put(self, session: Session) -> None:
        if not self.cache:
            return
        try:
            await self.cache.cache_session(session)
        except Exception as exc:
            self.logger.warning("session_cache_write_failed", session_id=session.id, error=str(exc))

    async def _cache_get(self, session_id: str) -> Optional[Session]:
        if not self.cache:
            return None
        try:
            return await self.cache.get_cached_session(session_id)
        except Exception as exc:
            self.logger.warning("session_cache_read_failed", session_id=session_id, error=str(exc))
            return None

    async def _cache_evict(self, session_id: str, user_id: Optional[str] = None) -> None:
        if not self.cache:
            return
        try:
            await self.cache.evict_session(session_id, user_id)
        except Exception as exc:
            self.logger.warning("session_cache_evict_failed", session_id=session_id, error=str(exc))

    async def _cache_evict_user(self, user_id: str) -> None:
        if not self.cache:
            return
        try:
            await self.cache.evict_user_sessions(user_id)
        except Exception as exc:
            self.logger.warning("session_cache_evict_user_failed", user_id=user_id, error=str(exc))

    # queries ---------------------------------------------------------------

    def is_live(self, session: Session, now: Optional[datetime] = None) -> bool:
        return session.is_live(now or self.clock(), self.idle_timeout)

    async def get(self, session_id: str) -> Optional[Session]:
        if not session_id:
            return None
        cached = await self._cache_get(session_id)
        if cached is not None:
            return cached
        session = await self._store(self.store.get_session, session_id)
        if session is not None and session.is_active:
            await self._cache_put(session)
        return session

    async def list_live(self, user_id: str) -> List[Session]:
        """Live sessions, least recently active first."""
        now = self.clock()
        return await self._store(
            self.store.list_live_sessions, user_id, now, now - self.idle_timeout
        )

    async def count_live(self, user_id: str) -> int:
        return len(await self.list_live(user_id))

    # mutations -------------------------------------------------------------

    async def create(
        self, user_id: str, user_agent: Optional[str], ip: Optional[str]
    ) -> Session:
        """Open a session, ending the least active ones when the cap is reached."""
        device = parse_user_agent(user_agent)
        location = await self.locator.resolve(ip)
        live = await self.list_live(user_id)
        overflow = len(live) - self.max_sessions + 1
        if overflow > 0:
            unprotected = [s for s in live if not s.protected]
            protected = [s for s in live if s.protected]
            for victim in (unprotected + protected)[:overflow]:
                await self._store(self.store.deactivate_session, victim.id)
                await self._cache_evict(victim.id, user_id)
                self.logger.info(
                    "session_evicted_for_cap",
                    user_id=user_id,
                    session_id=victim.id,
                    protected=victim.protected,
                )
        session = Session.new(
            user_id,
            self.ttl_hours,
            display_name=device.display_name(location),
            device_info=device.device_info,
            ip_address=ip or "",
            location=location,
            now=self.clock(),
        )
        await self._store(self.store.insert_session, session)
        await self._cache_put(session)
        return session

    async def touch(self, session_id: str) -> bool:
        session = await self.get(session_id)
        if session is None:
            return False
        return await self._touch(session)

    async def _touch(self, session: Session) -> bool:
        now = self.clock()
        if not await self._store(self.store.touch_session, session.id, now):
            await self._cache_evict(session.id, session.user_id)
            return False
        session.last_activity_at = now
        await self._cache_put(session)
        return True

    async def end(self, session_id: str) -> bool:
        """Deactivate one session; unknown ids return False.

        Raises:
            ProtectedSessionError: the session is flagged protected
        """
        session = await self._store(self.store.get_session, session_id)
        if session is None:
            return False
        if session.protected:
            raise ProtectedSessionError()
        await self._store(self.store.deactivate_session, session_id)
        await self._cache_evict(session_id, session.user_id)
        return True

    async def end_all(self, user_id: str, except_session_id: Optional[str] = None) -> int:
        """Deactivate every active session of a user, protected ones included."""
        count = await self._store(
            self.store.deactivate_user_sessions, user_id, except_session_id
        )
        await self._cache_evict_user(user_id)
        self.logger.info(
            "sessions_ended", user_id=user_id, count=count, kept=except_session_id
        )
        return count

    async def set_protected(self, session_id: str, protected: bool) -> Optional[Session]:
        if not await self._store(self.store.set_session_protected, session_id, protected):
            return None
        session = await self._store(self.store.get_session, session_id)
        if session is not None:
            await self._cache_evict(session_id, session.user_id)
        return session

    async def resolve(self, session_id: Optional[str]) -> Optional[Session]:
        """Session for an incoming cookie, touched when live.

        Idle sessions are deactivated. Any non-live session yields None so the
        caller can clear the cookie.
        """
        if not session_id:
            return None
        session = await self.get(session_id)
        if session is None:
            return None
        now = self.clock()
        if not self.is_live(session, now):
            if session.is_active and session.is_idle(now, self.idle_timeout):
                await self._store(self.store.deactivate_session, session.id)
                self.logger.info("session_idle_expired", session_id=session.id)
            await self._cache_evict(session.id, session.user_id)
            return None
        if not await self._touch(session):
            return None
        return session
