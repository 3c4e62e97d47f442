from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    username: str
    email: str
    password_hash: str
    created_at: datetime = field(default_factory=utcnow)
    last_email_change: Optional[datetime] = None
    last_password_change: Optional[datetime] = None
    is_active: bool = True
    two_factor_enabled: bool = False
    # Plaintext base32 once loaded; stores encrypt it at rest
    two_factor_secret: Optional[str] = None
    recovery_codes: List[str] = field(default_factory=list)

    def to_public(self) -> Dict[str, Any]:
        """Profile fields safe to return to the account owner."""
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "created_at": self.created_at.isoformat(),
            "last_email_change": (
                self.last_email_change.isoformat() if self.last_email_change else None
            ),
            "last_password_change": (
                self.last_password_change.isoformat()
                if self.last_password_change
                else None
            ),
            "two_factor_enabled": self.two_factor_enabled,
        }


@dataclass
class Session:
    id: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    last_activity_at: datetime
    display_name: str = ""
    device_info: str = ""
    ip_address: str = ""
    location: str = ""
    is_active: bool = True
    protected: bool = False

    @classmethod
    def new(
        cls,
        user_id: str,
        ttl_hours: int = 24,
        *,
        display_name: str = "",
        device_info: str = "",
        ip_address: str = "",
        location: str = "",
        now: datetime | None = None,
    ) -> "Session":
        now = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            created_at=now,
            expires_at=now + timedelta(hours=ttl_hours),
            last_activity_at=now,
            display_name=display_name,
            device_info=device_info,
            ip_address=ip_address,
            location=location,
        )

    def is_live(self, now: datetime, idle_timeout: timedelta) -> bool:
        return (
            self.is_active
            and now < self.expires_at
            and now - self.last_activity_at < idle_timeout
        )

    def is_idle(self, now: datetime, idle_timeout: timedelta) -> bool:
        return now - self.last_activity_at >= idle_timeout

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "last_activity_at": self.last_activity_at.isoformat(),
            "display_name": self.display_name,
            "device_info": self.device_info,
            "ip_address": self.ip_address,
            "location": self.location,
            "is_active": self.is_active,
            "protected": self.protected,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            created_at=datetime.fromisoformat(data["created_at"]),
            expires_at=datetime.fromisoformat(data["expires_at"]),
            last_activity_at=datetime.fromisoformat(data["last_activity_at"]),
            display_name=data.get("display_name", ""),
            device_info=data.get("device_info", ""),
            ip_address=data.get("ip_address", ""),
            location=data.get("location", ""),
            is_active=bool(data.get("is_active", True)),
            protected=bool(data.get("protected", False)),
        )
