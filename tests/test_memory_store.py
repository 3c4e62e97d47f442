from datetime import datetime, timedelta, timezone

import pytest

from tonotes.storage.errors import ConstraintViolation
from tonotes.storage.models import Session

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
IDLE = timedelta(hours=48)


@pytest.fixture
def user(memory_store):
    return memory_store.create_user("carol", "carol@example.com", "salt$key")


def _session(user_id, *, minutes_ago=0, ttl_hours=24):
    at = NOW - timedelta(minutes=minutes_ago)
    return Session.new(user_id, ttl_hours, now=at)


class TestUsers:
    def test_lookup_is_case_insensitive(self, memory_store, user):
        assert memory_store.get_user_by_username("CAROL").id == user.id
        assert memory_store.get_user_by_email("Carol@Example.COM").id == user.id

    def test_uniqueness(self, memory_store, user):
        with pytest.raises(ConstraintViolation) as exc:
            memory_store.create_user("Carol", "x@example.com", "h")
        assert exc.value.detail == {"field": "username"}
        with pytest.raises(ConstraintViolation) as exc:
            memory_store.create_user("dave", "CAROL@example.com", "h")
        assert exc.value.detail == {"field": "email"}

    def test_returned_records_are_copies(self, memory_store, user):
        loaded = memory_store.get_user(user.id)
        loaded.email = "changed@example.com"
        loaded.recovery_codes.append("x")
        fresh = memory_store.get_user(user.id)
        assert fresh.email == "carol@example.com"
        assert fresh.recovery_codes == []

    def test_update_email_conflict(self, memory_store, user):
        memory_store.create_user("dave", "dave@example.com", "h")
        with pytest.raises(ConstraintViolation):
            memory_store.update_user_email(user.id, "dave@example.com", NOW)

    def test_updates_on_missing_user(self, memory_store):
        assert memory_store.update_user_password("missing", "h", NOW) is False
        assert memory_store.update_user_email("missing", "a@b.co", NOW) is False
        assert memory_store.enable_two_factor("missing", "S", []) is False
        assert memory_store.delete_user("missing") is False

    def test_remove_recovery_code_once(self, memory_store, user):
        memory_store.enable_two_factor(user.id, "JBSWY3DPEHPK3PXP", ["a", "b"])
        assert memory_store.remove_recovery_code(user.id, "a") == 1
        assert memory_store.remove_recovery_code(user.id, "a") is None

    def test_delete_cascades_sessions(self, memory_store, user):
        session = memory_store.insert_session(_session(user.id))
        assert memory_store.delete_user(user.id)
        assert memory_store.get_session(session.id) is None


class TestSessions:
    def test_insert_requires_user(self, memory_store):
        with pytest.raises(ConstraintViolation):
            memory_store.insert_session(_session("missing"))

    def test_list_live_filters_and_orders(self, memory_store, user):
        recent = memory_store.insert_session(_session(user.id, minutes_ago=1))
        older = memory_store.insert_session(_session(user.id, minutes_ago=10))
        inactive = memory_store.insert_session(_session(user.id))
        memory_store.deactivate_session(inactive.id)
        memory_store.insert_session(_session(user.id, minutes_ago=60 * 25))

        live = memory_store.list_live_sessions(user.id, NOW, NOW - IDLE)
        assert [s.id for s in live] == [older.id, recent.id]

    def test_touch_skips_inactive(self, memory_store, user):
        session = memory_store.insert_session(_session(user.id))
        memory_store.deactivate_session(session.id)
        assert memory_store.touch_session(session.id, NOW) is False

    def test_deactivate_user_sessions_with_exception(self, memory_store, user):
        keep = memory_store.insert_session(_session(user.id))
        memory_store.insert_session(_session(user.id))
        assert memory_store.deactivate_user_sessions(user.id, keep.id) == 1
        assert memory_store.get_session(keep.id).is_active
