"""
User, session and profile data models for the authentication service.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from services.chat_service.models import SenderSummary, parse_timestamp


@dataclass
class AuthUser:
    """Principal returned by the auth API"""
    id: str
    email: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> 'AuthUser':
        return cls(
            id=payload["id"],
            email=payload.get("email") or "",
            metadata=payload.get("user_metadata") or {},
        )


@dataclass
class AuthSession:
    """Signed-in session"""
    access_token: str
    refresh_token: str
    user: AuthUser
    expires_at: Optional[datetime] = None

    @property
    def is_expired(self) -> bool:
        return self.expires_at is not None and datetime.now(timezone.utc) >= self.expires_at

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> Optional['AuthSession']:
        """Build a session from a token response, None when it carries no token"""
        if not payload or not payload.get("access_token"):
            return None
        expires_at = None
        if payload.get("expires_at"):
            expires_at = datetime.fromtimestamp(int(payload["expires_at"]), tz=timezone.utc)
        elif payload.get("expires_in"):
            expires_at = datetime.now(timezone.utc) + timedelta(seconds=int(payload["expires_in"]))
        return cls(
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token") or "",
            user=AuthUser.from_payload(payload["user"]),
            expires_at=expires_at,
        )


@dataclass
class UserProfile:
    """Row of the users table"""
    id: str
    email: str
    name: str
    username: str
    avatar_url: str = ""
    status_message: str = ""
    last_active: Optional[datetime] = None
    created_at: Optional[datetime] = None

    def summary(self) -> SenderSummary:
        return SenderSummary(id=self.id, name=self.name, username=self.username,
                             avatar_url=self.avatar_url)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'UserProfile':
        return cls(
            id=row["id"],
            email=row.get("email") or "",
            name=row.get("name") or "",
            username=row.get("username") or "",
            avatar_url=row.get("avatar_url") or "",
            status_message=row.get("status_message") or "",
            last_active=parse_timestamp(row.get("last_active")),
            created_at=parse_timestamp(row.get("created_at")),
        )


def default_avatar_url(template: str, seed: str) -> str:
    return template.format(seed=seed)
