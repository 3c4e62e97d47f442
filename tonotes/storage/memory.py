from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from tonotes.logging import get_logger
from tonotes.storage.common import SecretCipher, generate_uuid, identity_key
from tonotes.storage.errors import ConstraintViolation
from tonotes.storage.models import Session, User


class MemoryStore:
    """In-process backing store for tests and local development.

    Records are copied on the way in and out so callers never share state
    with the store. Second-factor secrets are held encrypted.
    """

    def __init__(self, *, secret_key: str) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        # RLock so helpers can re-enter while a public method holds it
        self._data_lock = threading.RLock()
        self._cipher = SecretCipher(secret_key)

    # users -----------------------------------------------------------------

    def _load(self, user: User) -> User:
        return replace(
            user,
            two_factor_secret=self._cipher.decrypt(user.two_factor_secret),
            recovery_codes=list(user.recovery_codes),
        )

    def _find_user(self, field_name: str, value: str) -> Optional[User]:
        key = identity_key(value)
        for user in self.users.values():
            if identity_key(getattr(user, field_name)) == key:
                return user
        return None

    def create_user(self, username: str, email: str, password_hash: str) -> User:
        with self._data_lock:
            if self._find_user("username", username):
                raise ConstraintViolation(
                    "username already exists", {"field": "username"}
                )
            if self._find_user("email", email):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=generate_uuid(),
                username=username,
                email=email,
                password_hash=password_hash,
            )
            self.users[user.id] = user
            return self._load(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return self._load(user) if user else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._data_lock:
            user = self._find_user("username", username)
            return self._load(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = self._find_user("email", email)
            return self._load(user) if user else None

    def update_user_password(
        self, user_id: str, password_hash: str, changed_at: datetime
    ) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            user.password_hash = password_hash
            user.last_password_change = changed_at
            return True

    def update_user_email(self, user_id: str, email: str, changed_at: datetime) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            existing = self._find_user("email", email)
            if existing and existing.id != user_id:
                raise ConstraintViolation("email already exists", {"field": "email"})
            user.email = email
            user.last_email_change = changed_at
            return True

    def enable_two_factor(
        self, user_id: str, secret: str, recovery_hashes: Sequence[str]
    ) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            user.two_factor_secret = self._cipher.encrypt(secret)
            user.recovery_codes = list(recovery_hashes)
            user.two_factor_enabled = True
            return True

    def disable_two_factor(self, user_id: str) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            user.two_factor_secret = None
            user.recovery_codes = []
            user.two_factor_enabled = False
            return True

    def remove_recovery_code(self, user_id: str, stored_hash: str) -> Optional[int]:
        """Remove one recovery hash; None when it was already gone."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or stored_hash not in user.recovery_codes:
                return None
            user.recovery_codes.remove(stored_hash)
            return len(user.recovery_codes)

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if self.users.pop(user_id, None) is None:
                return False
            for session_id in [
                sid for sid, sess in self.sessions.items() if sess.user_id == user_id
            ]:
                del self.sessions[session_id]
            return True

    # sessions --------------------------------------------------------------

    def insert_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation("user not found", {"field": "user_id"})
            self.sessions[session.id] = replace(session)
            return replace(session)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            session = self.sessions.get(session_id)
            return replace(session) if session else None

    def touch_session(self, session_id: str, at: datetime) -> bool:
        with self._data_lock:
            session = self.sessions.get(session_id)
            if not session or not session.is_active:
                return False
            session.last_activity_at = at
            return True

    def deactivate_session(self, session_id: str) -> bool:
        with self._data_lock:
            session = self.sessions.get(session_id)
            if not session:
                return False
            session.is_active = False
            return True

    def set_session_protected(self, session_id: str, protected: bool) -> bool:
        with self._data_lock:
            session = self.sessions.get(session_id)
            if not session:
                return False
            session.protected = protected
            return True

    def list_live_sessions(
        self, user_id: str, now: datetime, idle_cutoff: datetime
    ) -> List[Session]:
        """Active, unexpired sessions with activity after ``idle_cutoff``."""
        with self._data_lock:
            live = [
                replace(sess)
                for sess in self.sessions.values()
                if sess.user_id == user_id
                and sess.is_active
                and sess.expires_at > now
                and sess.last_activity_at > idle_cutoff
            ]
        live.sort(key=lambda s: (s.last_activity_at, s.created_at))
        return live

    def deactivate_user_sessions(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> int:
        with self._data_lock:
            count = 0
            for sess in self.sessions.values():
                if (
                    sess.user_id == user_id
                    and sess.is_active
                    and sess.id != except_session_id
                ):
                    sess.is_active = False
                    count += 1
            return count

    def ping(self) -> bool:
        return True
