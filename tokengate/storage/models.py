from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: int
    username: str
    email: str
    role: str = "user"
    created_at: datetime = field(default_factory=utcnow)
    is_active: bool = True

    @property
    def authorities(self) -> tuple[str, ...]:
        return (self.role,)


@dataclass
class TokenRecord:
    """Persisted state of one issued credential pair.

    ``id`` is ``None`` until the store assigns one on first save; after that a
    rotation rewrites the token strings and expiries under the same id.
    """

    user_id: int
    access_token: str
    refresh_token: str
    access_token_expires_at: datetime
    refresh_token_expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    id: Optional[int] = None

    def refresh_expired(self, now: datetime) -> bool:
        return self.refresh_token_expires_at <= now
