"""Session registry: caps, idle expiry, protection and bulk termination."""

import pytest

from tonotes.service.errors import ProtectedSessionError
from tonotes.service.sessions import SessionRegistry

CHROME_MAC = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


@pytest.fixture
def user(memory_store):
    return memory_store.create_user("sessionuser", "session@example.com", "x$y")


@pytest.fixture
def registry(memory_store, clock):
    return SessionRegistry(
        memory_store, None, max_sessions=5, ttl_hours=72, idle_hours=48, clock=clock
    )


class TestCreate:
    async def test_session_is_named_from_user_agent(self, registry, user):
        session = await registry.create(user.id, CHROME_MAC, "127.0.0.1")
        assert session.display_name == "Chrome on macOS (Local Network)"
        assert session.device_info == "Chrome on macOS (Desktop)"
        assert session.ip_address == "127.0.0.1"
        assert session.is_active and not session.protected

    async def test_sixth_login_evicts_least_recently_active(self, registry, user, clock):
        created = []
        for _ in range(5):
            created.append(await registry.create(user.id, CHROME_MAC, "10.0.0.1"))
            clock.advance(minutes=1)
        await registry.create(user.id, CHROME_MAC, "10.0.0.1")

        live = await registry.list_live(user.id)
        assert len(live) == 5
        assert created[0].id not in {s.id for s in live}

    async def test_cap_prefers_unprotected_victims(self, registry, memory_store, user, clock):
        first = await registry.create(user.id, None, None)
        await registry.set_protected(first.id, True)
        clock.advance(minutes=1)
        second = await registry.create(user.id, None, None)
        for _ in range(3):
            clock.advance(minutes=1)
            await registry.create(user.id, None, None)
        clock.advance(minutes=1)
        await registry.create(user.id, None, None)

        assert memory_store.get_session(first.id).is_active
        assert not memory_store.get_session(second.id).is_active
        assert await registry.count_live(user.id) == 5

    async def test_cap_of_one_replaces_the_session(self, memory_store, clock, user):
        registry = SessionRegistry(memory_store, None, max_sessions=1, clock=clock)
        old = await registry.create(user.id, None, None)
        new = await registry.create(user.id, None, None)
        assert [s.id for s in await registry.list_live(user.id)] == [new.id]
        assert not memory_store.get_session(old.id).is_active


class TestIdleExpiry:
    async def test_live_just_before_idle_limit(self, registry, user, clock):
        session = await registry.create(user.id, None, None)
        clock.advance(hours=47, minutes=59)
        resolved = await registry.resolve(session.id)
        assert resolved is not None
        assert resolved.last_activity_at == clock.now

    async def test_idle_at_limit_is_deactivated(self, registry, memory_store, user, clock):
        session = await registry.create(user.id, None, None)
        clock.advance(hours=48)
        assert await registry.resolve(session.id) is None
        assert not memory_store.get_session(session.id).is_active

    async def test_activity_extends_idle_window(self, registry, user, clock):
        session = await registry.create(user.id, None, None)
        clock.advance(hours=30)
        assert await registry.resolve(session.id) is not None
        clock.advance(hours=30)
        assert await registry.resolve(session.id) is not None

    async def test_expired_session_is_not_listed(self, memory_store, user, clock):
        registry = SessionRegistry(memory_store, None, ttl_hours=24, clock=clock)
        session = await registry.create(user.id, None, None)
        clock.advance(hours=24)
        assert await registry.list_live(user.id) == []
        assert await registry.resolve(session.id) is None

    async def test_unknown_session_resolves_to_none(self, registry):
        assert await registry.resolve("missing") is None
        assert await registry.resolve(None) is None


class TestEnd:
    async def test_end_deactivates(self, registry, memory_store, user):
        session = await registry.create(user.id, None, None)
        assert await registry.end(session.id) is True
        assert not memory_store.get_session(session.id).is_active

    async def test_unknown_session_returns_false(self, registry):
        assert await registry.end("missing") is False

    async def test_protected_session_cannot_be_ended(self, registry, memory_store, user):
        session = await registry.create(user.id, None, None)
        await registry.set_protected(session.id, True)
        with pytest.raises(ProtectedSessionError):
            await registry.end(session.id)
        assert memory_store.get_session(session.id).is_active

    async def test_end_all_keeps_only_the_exception(self, registry, user):
        keep = await registry.create(user.id, None, None)
        other = await registry.create(user.id, None, None)
        await registry.set_protected(other.id, True)
        await registry.create(user.id, None, None)

        assert await registry.end_all(user.id, except_session_id=keep.id) == 2
        assert [s.id for s in await registry.list_live(user.id)] == [keep.id]

    async def test_set_protected_unknown_session(self, registry):
        assert await registry.set_protected("missing", True) is None


class FlakyCache:
    """Cache double that fails every call."""

    async def cache_session(self, session):
        raise ConnectionError("redis down")

    async def get_cached_session(self, session_id):
        raise ConnectionError("redis down")

    async def evict_session(self, session_id, user_id=None):
        raise ConnectionError("redis down")

    async def evict_user_sessions(self, user_id):
        raise ConnectionError("redis down")


class TestCacheFailures:
    async def test_store_is_used_when_cache_fails(self, memory_store, clock, user):
        registry = SessionRegistry(memory_store, FlakyCache(), clock=clock)
        session = await registry.create(user.id, None, None)
        assert (await registry.get(session.id)).id == session.id
        assert await registry.resolve(session.id) is not None
        assert await registry.end(session.id) is True
        assert await registry.end_all(user.id) == 0


class StaticLocator:
    async def resolve(self, ip):
        return "Lisbon, Portugal"


async def test_session_uses_resolved_location(memory_store, clock, user):
    registry = SessionRegistry(memory_store, None, clock=clock, locator=StaticLocator())
    session = await registry.create(user.id, CHROME_MAC, "8.8.8.8")
    assert session.location == "Lisbon, Portugal"
    assert session.display_name == "Chrome on macOS (Lisbon, Portugal)"
