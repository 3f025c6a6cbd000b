"""
Message reactions - the reactions on one message, kept fresh from the change feed.
"""

from collections import Counter
from typing import Any, Callable, Dict, List, Optional

from infrastructure.external.backend_client import eq, get_backend_client
from infrastructure.external.backend_errors import BackendError
from infrastructure.external.realtime_client import ChangeEvent, get_realtime_client
from infrastructure.monitoring.logging_service import get_logger, log_user_interaction
from services.chat_service.models import MessageReaction, Reaction, SenderSummary
from services.ui_service.notifications import Notifier, get_notifier, surface_error

REACTION_COLUMNS = "*,user:users(id,name,username,avatar_url)"


class MessageReactions:
    """
    Reactions on one message.

    Args:
        message_id: Message the reactions belong to
        user_provider: Returns the signed-in user's summary
    """

    def __init__(self, message_id: str, user_provider: Callable[[], Optional[SenderSummary]],
                 backend=None, realtime=None, notifier: Optional[Notifier] = None):
        self.logger = get_logger(__name__)
        self.message_id = message_id
        self.user_provider = user_provider
        self.backend = backend or get_backend_client()
        self.realtime = realtime or get_realtime_client()
        self.notifier = notifier or get_notifier()

        self.reactions: List[MessageReaction] = []
        self.loading = False
        self._channel = None
        self._listeners: List[Callable[[List[MessageReaction]], Any]] = []

    def add_listener(self, callback: Callable[[List[MessageReaction]], Any]):
        self._listeners.append(callback)

    async def start(self):
        channel = self.realtime.channel(f"reactions:{self.message_id}")
        channel.on_postgres_changes("*", "message_reactions", self._on_change,
                                    filter=f"message_id=eq.{self.message_id}")
        self._channel = channel
        try:
            await channel.subscribe()
        except BackendError as e:
            self.logger.warning(f"Reaction updates unavailable for {self.message_id}: {e}")
        await self.fetch()

    async def stop(self):
        channel, self._channel = self._channel, None
        if channel is not None:
            await channel.unsubscribe()

    async def __aenter__(self) -> 'MessageReactions':
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()

    async def fetch(self) -> List[MessageReaction]:
        self.loading = True
        try:
            rows = await self.backend.select("message_reactions", columns=REACTION_COLUMNS,
                                             filters=[eq("message_id", self.message_id)])
        except BackendError as e:
            self.logger.error(f"Error fetching reactions: {e}")
            return self.reactions
        finally:
            self.loading = False

        self.reactions = [MessageReaction.from_row(row) for row in rows]
        for callback in list(self._listeners):
            try:
                callback(list(self.reactions))
            except Exception as e:
                self.logger.error(f"Reaction listener failed: {e}", exc_info=True)
        return self.reactions

    async def _on_change(self, event: ChangeEvent):
        # Refetch to get the embedded user summaries
        await self.fetch()

    def _user_id(self) -> Optional[str]:
        user = self.user_provider()
        return user.id if user else None

    async def add(self, reaction: Reaction) -> bool:
        user_id = self._user_id()
        if user_id is None:
            return False
        reaction = Reaction(reaction)
        try:
            await self.backend.insert("message_reactions", {
                "message_id": self.message_id,
                "user_id": user_id,
                "reaction": reaction.value,
            })
        except BackendError as e:
            self.logger.error(f"Error adding reaction: {e}")
            surface_error(e, self.notifier, context="add_reaction")
            return False
        log_user_interaction(self.logger, "reaction_added", message_id=self.message_id, reaction=reaction.value)
        return True

    async def remove(self, reaction: Reaction) -> bool:
        user_id = self._user_id()
        if user_id is None:
            return False
        reaction = Reaction(reaction)
        try:
            await self.backend.delete("message_reactions", [
                eq("message_id", self.message_id),
                eq("user_id", user_id),
                eq("reaction", reaction.value),
            ])
        except BackendError as e:
            self.logger.error(f"Error removing reaction: {e}")
            surface_error(e, self.notifier, context="remove_reaction")
            return False
        log_user_interaction(self.logger, "reaction_removed", message_id=self.message_id, reaction=reaction.value)
        return True

    async def toggle(self, reaction: Reaction) -> bool:
        """Remove the user's reaction if present, add it otherwise"""
        reaction = Reaction(reaction)
        if reaction in self.user_reactions():
            return await self.remove(reaction)
        return await self.add(reaction)

    def reaction_counts(self) -> Dict[Reaction, int]:
        return dict(Counter(r.reaction for r in self.reactions))

    def user_reactions(self) -> List[Reaction]:
        user_id = self._user_id()
        return [r.reaction for r in self.reactions if r.user_id == user_id]
