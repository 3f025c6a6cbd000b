"""
Chat list service - the signed-in user's conversations ordered by last activity.
"""

from datetime import datetime, timezone
from typing import Any, Callable, List, Optional

from infrastructure.config.settings import MessagingConfig, get_config
from infrastructure.external.backend_client import contains, eq, in_, neq, or_, get_backend_client
from infrastructure.external.backend_errors import BackendError
from infrastructure.external.realtime_client import ChangeEvent, ChangeKind, get_realtime_client
from infrastructure.monitoring.logging_service import get_logger, log_execution_time
from services.chat_service.models import Chat, SenderSummary, parse_timestamp, utc_now
from services.ui_service.notifications import Notifier, get_notifier, surface_error

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _activity(chat: Chat) -> datetime:
    return chat.updated_at or chat.created_at or _EPOCH


def sort_chats(chats: List[Chat]) -> List[Chat]:
    """Most recent activity first"""
    return sorted(chats, key=_activity, reverse=True)


class ChatList:
    """
    Conversations of the signed-in user.

    Args:
        user_provider: Returns the signed-in user's summary
        backend: REST client
        realtime: Change feed client
        notifier: Where user-visible failures go
        config: Messaging settings (search limits)
    """

    def __init__(self, user_provider: Callable[[], Optional[SenderSummary]], backend=None, realtime=None,
                 notifier: Optional[Notifier] = None, config: Optional[MessagingConfig] = None):
        self.logger = get_logger(__name__)
        self.user_provider = user_provider
        self.backend = backend or get_backend_client()
        self.realtime = realtime or get_realtime_client()
        self.notifier = notifier or get_notifier()
        self.config = config or get_config().messaging

        self.chats: List[Chat] = []
        self.loading = False
        self._channel = None
        self._listeners: List[Callable[[List[Chat]], Any]] = []

    @property
    def user_id(self) -> Optional[str]:
        user = self.user_provider()
        return user.id if user else None

    def add_listener(self, callback: Callable[[List[Chat]], Any]):
        self._listeners.append(callback)

    def _apply(self, chats: List[Chat]):
        self.chats = chats
        for callback in list(self._listeners):
            try:
                callback(list(chats))
            except Exception as e:
                self.logger.error(f"Chat list listener failed: {e}", exc_info=True)

    async def fetch_chats(self) -> List[Chat]:
        """Load every chat the user participates in, with the other participants"""
        user_id = self.user_id
        if user_id is None:
            self._apply([])
            return []

        self.loading = True
        try:
            with log_execution_time(self.logger, "fetch_chats", user_id=user_id):
                rows = await self.backend.select(
                    "chats", filters=[contains("participants", [user_id])],
                    order="updated_at", ascending=False,
                )
                chats = [Chat.from_row(row) for row in rows]
                await self._attach_users(chats, user_id)
        except BackendError as e:
            self.logger.error(f"Error fetching chats: {e}")
            surface_error(e, self.notifier, context="fetch_chats")
            return self.chats
        finally:
            self.loading = False

        self._apply(sort_chats(chats))
        return self.chats

    async def _attach_users(self, chats: List[Chat], user_id: str):
        other_ids = sorted({pid for chat in chats for pid in chat.participants if pid != user_id})
        if not other_ids:
            return
        rows = await self.backend.select("users", filters=[in_("id", other_ids)])
        users = {row["id"]: SenderSummary.from_row(row) for row in rows}
        for chat in chats:
            chat.users = [users[pid] for pid in chat.participants if pid != user_id and pid in users]

    # Live updates

    async def start(self):
        """Load chats and follow chat, message and profile changes"""
        user_id = self.user_id
        if user_id is None or self._channel is not None:
            return
        channel = self.realtime.channel(f"user_chats:{user_id}")
        channel.on_postgres_changes("*", "chats", self._on_chat_change, filter=f"participants=cs.{{{user_id}}}")
        channel.on_postgres_changes("INSERT", "messages", self._on_message_insert)
        channel.on_postgres_changes("UPDATE", "users", self._on_user_update)
        self._channel = channel
        try:
            await channel.subscribe()
        except BackendError as e:
            self.logger.warning(f"Chat updates unavailable: {e}")
        await self.fetch_chats()

    async def stop(self):
        channel, self._channel = self._channel, None
        if channel is not None:
            await channel.unsubscribe()

    async def _on_chat_change(self, event: ChangeEvent):
        self.logger.debug(f"Chat update received: {event.kind.value}")
        await self.fetch_chats()

    def _on_message_insert(self, event: ChangeEvent):
        record = event.record
        self._bump(record.get("chat_id"), record.get("content") or "",
                   parse_timestamp(record.get("created_at")) or utc_now())

    def _on_user_update(self, event: ChangeEvent):
        if event.kind != ChangeKind.UPDATE or not event.record.get("id"):
            return
        updated = SenderSummary.from_row(event.record)
        changed = False
        for chat in self.chats:
            for i, user in enumerate(chat.users):
                if user.id == updated.id:
                    chat.users[i] = updated
                    changed = True
        if changed:
            self._apply(list(self.chats))

    def _bump(self, chat_id: Optional[str], content: str, at: datetime):
        chats = list(self.chats)
        for chat in chats:
            if chat.id == chat_id:
                if chat.updated_at is not None and chat.updated_at > at:
                    return
                chat.last_message = content
                chat.updated_at = at
                self._apply(sort_chats(chats))
                return

    def note_local_send(self, chat_id: str, content: str, at: Optional[datetime] = None):
        """Optimistically move a chat to the top after a local send"""
        self._bump(chat_id, content, at or utc_now())

    # Operations

    async def create_chat(self, other_user_id: str) -> Optional[str]:
        """
        Get the direct chat with another user, creating it if needed

        Returns:
            Chat id, or None on failure
        """
        user_id = self.user_id
        if user_id is None:
            return None
        try:
            existing = await self.backend.select_one(
                "chats", filters=[contains("participants", [user_id, other_user_id]), eq("is_group", False)]
            )
            if existing:
                return existing["id"]
            row = await self.backend.insert("chats", {"participants": [user_id, other_user_id], "is_group": False})
        except BackendError as e:
            self.logger.error(f"Error creating chat: {e}")
            surface_error(e, self.notifier, context="create_chat")
            return None
        self.logger.info(f"Created chat {row['id']}")
        return row["id"]

    async def search_users(self, query: str) -> List[SenderSummary]:
        """Other users whose name, email or username contains the query"""
        query = (query or "").strip()
        user_id = self.user_id
        if not query:
            return []
        pattern = f"*{query}*"
        filters = [or_(f"name.ilike.{pattern}", f"email.ilike.{pattern}", f"username.ilike.{pattern}")]
        if user_id:
            filters.append(neq("id", user_id))
        try:
            rows = await self.backend.select("users", filters=filters, limit=self.config.user_search_limit)
        except BackendError as e:
            self.logger.error(f"Error searching users: {e}")
            return []
        return [SenderSummary.from_row(row) for row in rows]

    async def unread_count(self, chat_id: str) -> int:
        try:
            count = await self.backend.rpc("get_unread_count", {"chat_id_param": chat_id})
        except BackendError as e:
            self.logger.warning(f"Unread count unavailable for chat {chat_id}: {e}")
            return 0
        return int(count or 0)

    async def mark_as_read(self, chat_id: str) -> bool:
        try:
            await self.backend.rpc("mark_messages_as_read", {"chat_id_param": chat_id})
        except BackendError as e:
            self.logger.warning(f"Could not mark chat {chat_id} as read: {e}")
            return False
        return True

    def get_chat(self, chat_id: str) -> Optional[Chat]:
        for chat in self.chats:
            if chat.id == chat_id:
                return chat
        return None

