"""
Messaging client - one signed-in user's view of the messaging backend.

Composes the auth, chat list, presence and per-conversation services on top
of a shared REST client and realtime connection.

Usage:
    async with MessagingClient() as client:
        await client.auth.sign_in(email, password)
        await client.start()
        async with client.open_chat(chat_id) as chat:
            chat.messages.submit("hello")
"""

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

from infrastructure.config.settings import AppConfig, get_config
from infrastructure.external.backend_client import BackendClient
from infrastructure.external.realtime_client import RealtimeClient
from infrastructure.monitoring.logging_service import get_logger, initialize_logging
from infrastructure.resilience.retry_service import RetryService
from services.auth_service.auth_manager import AuthManager
from services.chat_service.chat_list import ChatList
from services.chat_service.message_search import MessageSearch
from services.chat_service.message_store import MessageStore
from services.chat_service.reactions import MessageReactions
from services.chat_service.typing_indicator import TypingIndicator
from services.presence_service.presence_heartbeat import PresenceHeartbeat
from services.ui_service.notifications import Notifier, get_notifier

logger = get_logger(__name__)


@dataclass
class OpenChat:
    """Services scoped to one open conversation"""
    chat_id: str
    messages: MessageStore
    typing: TypingIndicator


class MessagingClient:
    """
    Facade over every service of the messaging client.

    Args:
        config: Application configuration (defaults to the global configuration)
        backend: REST client, built from config when omitted
        realtime: Realtime client, built from config when omitted
        notifier: Where user-visible notifications go
    """

    def __init__(self, config: Optional[AppConfig] = None, backend=None, realtime=None,
                 notifier: Optional[Notifier] = None):
        self.config = config or get_config()
        self.backend = backend or BackendClient(self.config.backend, timeout=self.config.messaging.request_timeout)
        self.realtime = realtime or RealtimeClient(self.config.backend, self.config.realtime)
        self.notifier = notifier or get_notifier()
        self.retry_service = RetryService(self.config.messaging.request_timeout)

        self.auth = AuthManager(self.backend, self.realtime, self.notifier, self.retry_service, self.config.auth)
        self.chats = ChatList(self.auth.current_sender, self.backend, self.realtime, self.notifier,
                              self.config.messaging)
        self.presence = PresenceHeartbeat(self.backend, self.realtime, self.config.presence)
        self.search = MessageSearch(self.backend, self.config.messaging)
        self.started = False

    async def start(self):
        """Start the signed-in services: chat list updates and presence"""
        if not self.auth.is_authenticated:
            logger.warning("Cannot start messaging services without a signed-in user")
            return
        await self.chats.start()
        await self.presence.start()
        self.started = True

    async def stop(self):
        if not self.started:
            return
        self.started = False
        await self.presence.stop()
        await self.chats.stop()

    async def close(self):
        await self.stop()
        await self.realtime.disconnect()
        await self.backend.close()

    async def __aenter__(self) -> 'MessagingClient':
        initialize_logging()
        await self.auth.initialize()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    def message_store(self) -> MessageStore:
        store = MessageStore(self.backend, self.realtime, self.auth.current_sender, self.notifier,
                             self.retry_service, self.config.messaging)
        # Bump the chat list as soon as a message is shown, then with the stored timestamp
        def bump(message):
            self.chats.note_local_send(message.chat_id, message.text, message.created_at)

        store.on_submitted(bump)
        store.on_sent(bump)
        return store

    @asynccontextmanager
    async def open_chat(self, chat_id: str):
        """Open a conversation; its subscriptions are released on every exit path"""
        store = self.message_store()
        typing = TypingIndicator(chat_id, self.auth.current_sender, self.realtime, self.config.typing)
        async with store.conversation(chat_id):
            async with typing:
                await self.chats.mark_as_read(chat_id)
                yield OpenChat(chat_id=chat_id, messages=store, typing=typing)

    def reactions(self, message_id: str) -> MessageReactions:
        return MessageReactions(message_id, self.auth.current_sender, self.backend, self.realtime, self.notifier)
