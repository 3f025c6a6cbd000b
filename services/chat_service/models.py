"""
Chat service data models for chats, messages, presence, reactions and search.
"""

import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

_FRACTION_RE = re.compile(r"\.(\d+)")


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse an ISO-8601 timestamp as sent by the backend

    Accepts a trailing ``Z`` and any number of fractional digits.
    Naive values are taken as UTC.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip().replace(" ", "T", 1)
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        # fromisoformat wants exactly 3 or 6 fractional digits on older interpreters
        text = _FRACTION_RE.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class MessageKind(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    AI = "ai"


class Mood(str, Enum):
    HAPPY = "happy"
    SAD = "sad"
    ANGRY = "angry"
    ANXIOUS = "anxious"
    NEUTRAL = "neutral"


class DeliveryState(str, Enum):
    """Where a message is in the optimistic send lifecycle"""
    PROVISIONAL = "provisional"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    PERMANENTLY_FAILED = "permanently_failed"


@dataclass
class SenderSummary:
    """Denormalized sender shown next to a message"""
    id: str
    name: str = ""
    username: str = ""
    avatar_url: str = ""

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'SenderSummary':
        return cls(
            id=row["id"],
            name=row.get("name") or "",
            username=row.get("username") or "",
            avatar_url=row.get("avatar_url") or "",
        )


@dataclass
class Message:
    """Message in a chat, either server-confirmed or still local"""
    id: str
    chat_id: str
    sender_id: str
    content: str
    created_at: datetime
    kind: MessageKind = MessageKind.TEXT
    mood: Mood = Mood.NEUTRAL
    sender: Optional[SenderSummary] = None
    state: DeliveryState = DeliveryState.CONFIRMED
    local_id: Optional[str] = None  # provisional token, kept after confirmation
    original_content: Optional[str] = None  # content without failure markers
    reply_to_id: Optional[str] = None
    edited_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None

    @property
    def is_pending(self) -> bool:
        """Provisional or failed-but-retryable entries can still be reconciled"""
        return self.state in (DeliveryState.PROVISIONAL, DeliveryState.FAILED)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def text(self) -> str:
        """The user-authored text, never a failure marker"""
        return (self.original_content if self.original_content is not None else self.content).strip()

    def with_changes(self, **changes) -> 'Message':
        return replace(self, **changes)

    @classmethod
    def from_row(cls, row: Dict[str, Any], sender: Optional[SenderSummary] = None) -> 'Message':
        """Build a confirmed message from a backend row"""
        embedded = row.get("sender")
        if sender is None and isinstance(embedded, dict) and embedded.get("id"):
            sender = SenderSummary.from_row(embedded)
        return cls(
            id=row["id"],
            chat_id=row.get("chat_id", ""),
            sender_id=row["sender_id"],
            content=row.get("content") or "",
            created_at=parse_timestamp(row.get("created_at")) or utc_now(),
            kind=MessageKind(row.get("type") or MessageKind.TEXT.value),
            mood=Mood(row.get("mood") or Mood.NEUTRAL.value),
            sender=sender,
            reply_to_id=row.get("reply_to_id"),
            edited_at=parse_timestamp(row.get("edited_at")),
            deleted_at=parse_timestamp(row.get("deleted_at")),
        )

    def to_insert_row(self) -> Dict[str, Any]:
        row = {
            "chat_id": self.chat_id,
            "sender_id": self.sender_id,
            "content": self.text,
            "type": self.kind.value,
            "mood": self.mood.value,
        }
        if self.reply_to_id:
            row["reply_to_id"] = self.reply_to_id
        return row


class ChangeType(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


@dataclass
class MessageChange:
    """A change feed event for one message row"""
    type: ChangeType
    message: Optional[Message] = None
    message_id: Optional[str] = None

    @property
    def target_id(self) -> Optional[str]:
        if self.message is not None:
            return self.message.id
        return self.message_id


@dataclass
class Chat:
    """Chat with denormalized participants and last activity"""
    id: str
    participants: List[str] = field(default_factory=list)
    is_group: bool = False
    name: Optional[str] = None
    last_message: str = ""
    updated_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    users: List[SenderSummary] = field(default_factory=list)

    @property
    def other_user(self) -> Optional[SenderSummary]:
        return self.users[0] if self.users else None

    @property
    def display_name(self) -> str:
        if self.is_group:
            return self.name or ", ".join(u.name for u in self.users) or "Group chat"
        return self.other_user.name if self.other_user else (self.name or "Unknown User")

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'Chat':
        return cls(
            id=row["id"],
            participants=list(row.get("participants") or []),
            is_group=bool(row.get("is_group")),
            name=row.get("name"),
            last_message=row.get("last_message") or "",
            updated_at=parse_timestamp(row.get("updated_at")),
            created_at=parse_timestamp(row.get("created_at")),
        )


class PresenceStatus(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"
    AWAY = "away"
    BUSY = "busy"


@dataclass
class UserPresence:
    user_id: str
    status: PresenceStatus
    last_seen: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'UserPresence':
        return cls(
            user_id=row["user_id"],
            status=PresenceStatus(row.get("status") or PresenceStatus.OFFLINE.value),
            last_seen=parse_timestamp(row.get("last_seen")),
            updated_at=parse_timestamp(row.get("updated_at")),
        )


class Reaction(str, Enum):
    """Supported message reactions"""
    THUMBS_UP = "👍"
    THUMBS_DOWN = "👎"
    HEART = "❤️"
    LAUGH = "😂"
    WOW = "😮"
    SAD = "😢"
    ANGRY = "😡"


@dataclass
class MessageReaction:
    id: str
    message_id: str
    user_id: str
    reaction: Reaction
    created_at: Optional[datetime] = None
    user: Optional[SenderSummary] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'MessageReaction':
        embedded = row.get("user")
        return cls(
            id=row["id"],
            message_id=row["message_id"],
            user_id=row["user_id"],
            reaction=Reaction(row["reaction"]),
            created_at=parse_timestamp(row.get("created_at")),
            user=SenderSummary.from_row(embedded) if isinstance(embedded, dict) and embedded.get("id") else None,
        )


@dataclass
class SearchResult:
    """Full-text search hit"""
    id: str
    content: str
    created_at: Optional[datetime]
    sender_id: str
    chat_id: str
    sender_name: str = ""
    chat_name: str = ""

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'SearchResult':
        return cls(
            id=row["id"],
            content=row.get("content") or "",
            created_at=parse_timestamp(row.get("created_at")),
            sender_id=row.get("sender_id", ""),
            chat_id=row.get("chat_id", ""),
            sender_name=row.get("sender_name") or "",
            chat_name=row.get("chat_name") or "",
        )
