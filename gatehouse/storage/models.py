from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class Role(str, Enum):
    USER = "user"
    MODERATOR = "moderator"
    ADMIN = "admin"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class IdentityRecord:
    """Authoritative account state consulted on every credential check."""

    id: str
    email: str
    name: Optional[str] = None
    role: str = Role.USER.value
    is_active: bool = True
    # Tokens issued strictly before this instant are stale
    password_changed_at: Optional[datetime] = None
    # At most one live refresh token per subject
    refresh_token: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    def to_public(self) -> Dict[str, Any]:
        """Cacheable projection; never carries credential material."""
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "role": self.role,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class PasswordRecord:
    user_id: str
    password_hash: str
    password_algo: str
    updated_at: datetime = field(default_factory=_utcnow)


class _AnyRefreshToken:
    """Sentinel accepted by ``compare_and_set_refresh_token`` to skip the comparison."""

    def __repr__(self) -> str:
        return "ANY_REFRESH_TOKEN"


ANY_REFRESH_TOKEN: Any = _AnyRefreshToken()
