"""
Message store - the visible message list of the open conversation.

Local sends show up immediately as provisional entries and are delivered in
the background as bounded operations (timeout plus one automatic retry).
Replies and change feed notifications are merged with the pure functions in
message_merge, so whichever arrives first the list keeps one entry per
logical message.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set

from infrastructure.config.settings import MessagingConfig, get_config
from infrastructure.external.backend_client import eq, in_, get_backend_client
from infrastructure.external.backend_errors import (
    BackendError,
    ConnectivityError,
    RequestTimeoutError,
)
from infrastructure.external.realtime_client import ChangeEvent, ChangeKind, get_realtime_client
from infrastructure.monitoring.logging_service import get_error_tracker, get_logger, log_message_event
from infrastructure.resilience.retry_service import RetryCancelled, RetryPolicy, get_retry_service
from services.chat_service.message_merge import (
    build_provisional,
    index_of,
    index_of_local,
    insert_sorted,
    mark_failed,
    mark_permanently_failed,
    mark_retrying,
    merge_change,
    reconcile,
    reset_for_manual_retry,
)
from services.chat_service.models import (
    ChangeType,
    DeliveryState,
    Message,
    MessageChange,
    MessageKind,
    Mood,
    SenderSummary,
)
from services.ui_service.notifications import Notifier, get_notifier, surface_error

MESSAGE_COLUMNS = "id,chat_id,content,created_at,sender_id,type,mood,reply_to_id,edited_at,deleted_at"
SENDER_COLUMNS = "id,name,username,avatar_url"

SenderProvider = Callable[[], Optional[SenderSummary]]
ListListener = Callable[[List[Message]], Any]
SentListener = Callable[[Message], Any]


class MessageStore:
    """
    Ordered, de-duplicated message list for one open conversation.

    Args:
        backend: REST client (defaults to the global backend client)
        realtime: Change feed client (defaults to the global realtime client)
        sender_provider: Returns the signed-in user's summary, None when signed out
        notifier: Where user-visible failures go
        retry_service: Builds the bounded delivery operations
        config: Messaging settings
    """

    def __init__(self, backend=None, realtime=None, sender_provider: Optional[SenderProvider] = None,
                 notifier: Optional[Notifier] = None, retry_service=None,
                 config: Optional[MessagingConfig] = None):
        self.logger = get_logger(__name__)
        self.backend = backend or get_backend_client()
        self.realtime = realtime or get_realtime_client()
        self.sender_provider = sender_provider
        self.notifier = notifier or get_notifier()
        self.retry_service = retry_service or get_retry_service()
        self.config = config or get_config().messaging

        self.chat_id: Optional[str] = None
        self.messages: List[Message] = []
        self.loading = False

        self._generation = 0
        self._channel = None
        self._tasks: Set[asyncio.Task] = set()
        self._outbox: Dict[str, Message] = {}  # local_id -> message as submitted
        self._sender_cache: Dict[str, SenderSummary] = {}
        self._listeners: List[ListListener] = []
        self._sent_listeners: List[SentListener] = []
        self._submit_listeners: List[SentListener] = []

    # Listeners

    def add_listener(self, callback: ListListener) -> Callable[[], None]:
        """Call ``callback(messages)`` after every list change; returns a remover"""
        self._listeners.append(callback)
        return lambda: self._listeners.remove(callback) if callback in self._listeners else None

    def on_sent(self, callback: SentListener) -> Callable[[], None]:
        """Call ``callback(message)`` after each confirmed local send"""
        self._sent_listeners.append(callback)
        return lambda: self._sent_listeners.remove(callback) if callback in self._sent_listeners else None

    def on_submitted(self, callback: SentListener) -> Callable[[], None]:
        """Call ``callback(message)`` with each provisional entry as soon as it is shown"""
        self._submit_listeners.append(callback)
        return lambda: self._submit_listeners.remove(callback) if callback in self._submit_listeners else None

    def _apply(self, messages: List[Message]):
        self.messages = messages
        for callback in list(self._listeners):
            try:
                callback(list(messages))
            except Exception as e:
                self.logger.error(f"Message list listener failed: {e}", exc_info=True)

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation

    # Conversation lifecycle

    async def open(self, chat_id: str):
        """Open a conversation: subscribe to its changes and load the latest page"""
        if self.chat_id is not None:
            await self.close()

        self._generation += 1
        self.chat_id = chat_id
        self._apply([])

        channel = self.realtime.channel(f"messages:{chat_id}")
        channel.on_postgres_changes("*", "messages", self._on_change, filter=f"chat_id=eq.{chat_id}")
        self._channel = channel
        try:
            await channel.subscribe()
        except BackendError as e:
            # History still loads; live updates resume on the next open
            self.logger.warning(f"Live updates unavailable for chat {chat_id}: {e}")
            surface_error(e, self.notifier, context="subscribe_messages")

        log_message_event(self.logger, "conversation_opened", chat_id)
        await self.load()

    async def close(self):
        """Discard the list, cancel pending deliveries and release the subscription"""
        self._generation += 1
        chat_id = self.chat_id
        channel, self._channel = self._channel, None

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._outbox.clear()

        self.chat_id = None
        self.loading = False
        self._apply([])

        if channel is not None:
            try:
                await channel.unsubscribe()
            except BackendError as e:
                self.logger.warning(f"Unsubscribe from chat {chat_id} failed: {e}")
        if chat_id is not None:
            log_message_event(self.logger, "conversation_closed", chat_id)

    @asynccontextmanager
    async def conversation(self, chat_id: str):
        """Scoped form of open/close; the subscription is released on every exit path"""
        await self.open(chat_id)
        try:
            yield self
        finally:
            await self.close()

    # Loading

    async def load(self):
        """
        Load the latest page of messages

        A timed-out page is retried once with the smaller fallback page. Other
        failures empty the list and are reported to the user.
        """
        chat_id = self.chat_id
        if chat_id is None:
            return
        generation = self._generation
        self.loading = True

        try:
            try:
                loaded = await self._fetch_page(chat_id, self.config.page_size)
            except RequestTimeoutError:
                self.logger.warning("Message loading timed out, trying smaller page")
                loaded = await self._fetch_page(chat_id, self.config.fallback_page_size)
        except BackendError as e:
            if self._is_current(generation):
                self.logger.error(f"Error fetching messages for chat {chat_id}: {e}")
                self._apply([])
                surface_error(e, self.notifier, context="load_messages")
            return
        finally:
            if self._is_current(generation):
                self.loading = False

        if not self._is_current(generation):
            self.logger.debug(f"Discarding stale page for chat {chat_id}")
            return

        # Entries that arrived while the page was in flight (local sends,
        # confirmations, change feed inserts) stay visible
        merged = loaded
        for message in self.messages:
            if index_of(merged, message.id) is None:
                merged = insert_sorted(merged, message)
        self._apply(merged)
        self.logger.info(f"Messages fetched successfully: {len(loaded)}")

    async def _fetch_page(self, chat_id: str, limit: int) -> List[Message]:
        rows = await self.retry_service.call(
            lambda: self.backend.select(
                "messages", columns=MESSAGE_COLUMNS, filters=[eq("chat_id", chat_id)],
                order="created_at", ascending=False, limit=limit,
            ),
            timeout=self.config.request_timeout,
            name="load_messages",
        )
        senders = await self._load_senders({row["sender_id"] for row in rows})
        # Newest first from the backend, shown oldest first
        return [Message.from_row(row, sender=senders.get(row["sender_id"])) for row in reversed(rows)]

    async def _load_senders(self, sender_ids: Iterable[str]) -> Dict[str, SenderSummary]:
        missing = [sid for sid in sender_ids if sid not in self._sender_cache]
        if missing:
            try:
                rows = await self.backend.select("users", columns=SENDER_COLUMNS, filters=[in_("id", missing)])
            except BackendError as e:
                self.logger.warning(f"Could not load sender details: {e}")
                rows = []
            for row in rows:
                self._sender_cache[row["id"]] = SenderSummary.from_row(row)
        return dict(self._sender_cache)

    async def _sender_for(self, sender_id: str) -> Optional[SenderSummary]:
        senders = await self._load_senders([sender_id])
        return senders.get(sender_id)

    # Sending

    def submit(self, content: str, kind: MessageKind = MessageKind.TEXT, mood: Mood = Mood.NEUTRAL,
               reply_to_id: Optional[str] = None) -> Optional[Message]:
        """
        Show a message immediately and deliver it in the background

        Returns:
            The provisional entry, or None when there is nothing to send, no
            open conversation or no signed-in sender
        """
        text = (content or "").strip()
        sender = self.sender_provider() if self.sender_provider else None
        if not text or self.chat_id is None or sender is None:
            self.logger.warning("Message not sent: empty content, no open chat or not signed in")
            return None

        self._sender_cache.setdefault(sender.id, sender)
        provisional = build_provisional(self.chat_id, sender.id, text, kind=kind, mood=mood,
                                        sender=sender, reply_to_id=reply_to_id)
        self._outbox[provisional.local_id] = provisional
        self._apply(self.messages + [provisional])
        log_message_event(self.logger, "submitted", self.chat_id, local_id=provisional.local_id)
        self._notify_each(self._submit_listeners, provisional, "Submit listener")

        self._spawn(self._deliver(provisional, self._generation))
        return provisional

    def retry(self, message_id: str) -> bool:
        """
        Manually retry a permanently failed message with a fresh retry budget

        Returns:
            True when a delivery was scheduled
        """
        index = index_of(self.messages, message_id)
        if index is None:
            return False
        entry = self.messages[index]
        if entry.state != DeliveryState.PERMANENTLY_FAILED or entry.local_id is None:
            return False

        submitted = self._outbox.get(entry.local_id) or entry
        self._apply(reset_for_manual_retry(self.messages, entry.local_id, kind=submitted.kind))
        provisional = self.messages[index_of_local(self.messages, entry.local_id)]
        provisional = provisional.with_changes(kind=submitted.kind, mood=submitted.mood)
        log_message_event(self.logger, "manual_retry", self.chat_id, local_id=entry.local_id)

        self._spawn(self._deliver(provisional, self._generation))
        return True

    async def _deliver(self, provisional: Message, generation: int):
        local_id = provisional.local_id
        chat_id = provisional.chat_id

        def on_retry(attempt: int, error: Exception, delay: float):
            if self._is_current(generation):
                self._apply(mark_failed(self.messages, local_id))
                log_message_event(self.logger, "failed", chat_id, local_id=local_id,
                                  error_type=type(error).__name__, retry_in=delay)

        def before_retry(attempt: int) -> bool:
            if not self._is_current(generation):
                return False
            index = index_of_local(self.messages, local_id)
            if index is None or not self.messages[index].is_pending:
                # Confirmed by the change feed while waiting to retry
                return False
            self._apply(mark_retrying(self.messages, local_id))
            log_message_event(self.logger, "retrying", chat_id, local_id=local_id, attempt=attempt)
            return True

        operation = self.retry_service.bounded(
            lambda: self.backend.insert("messages", provisional.to_insert_row(), columns=MESSAGE_COLUMNS),
            timeout=self.config.request_timeout,
            policy=RetryPolicy(max_retries=self.config.send_max_retries, delay=self.config.send_retry_delay),
            name="send_message",
            on_retry=on_retry,
            before_retry=before_retry,
        )

        try:
            row = await operation.run()
        except RetryCancelled:
            self._outbox.pop(local_id, None)
            log_message_event(self.logger, "retry_cancelled", chat_id, local_id=local_id)
            return
        except ConnectivityError as e:
            if self._is_current(generation):
                self._apply(mark_permanently_failed(self.messages, local_id))
                log_message_event(self.logger, "permanently_failed", chat_id, local_id=local_id,
                                  error_type=type(e).__name__, attempts=operation.attempts)
            return
        except BackendError as e:
            if self._is_current(generation):
                self._apply(mark_permanently_failed(self.messages, local_id))
                log_message_event(self.logger, "rejected", chat_id, local_id=local_id,
                                  error_type=type(e).__name__)
                surface_error(e, self.notifier, context="send_message")
            return

        if not self._is_current(generation):
            self.logger.debug(f"Discarding stale send reply for chat {chat_id}")
            return

        confirmed = Message.from_row(row, sender=provisional.sender)
        self._outbox.pop(local_id, None)
        self._apply(reconcile(self.messages, local_id, confirmed))
        log_message_event(self.logger, "confirmed", chat_id, local_id=local_id, message_id=confirmed.id)

        self._notify_each(self._sent_listeners, confirmed, "Sent listener")

    def _notify_each(self, listeners: List[SentListener], message: Message, label: str):
        for callback in list(listeners):
            try:
                callback(message)
            except Exception as e:
                self.logger.error(f"{label} failed: {e}", exc_info=True)

    def _spawn(self, coroutine: Awaitable[None]) -> asyncio.Task:
        task = asyncio.ensure_future(coroutine)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            get_error_tracker().track_error(error, context="message_delivery")

    async def wait_idle(self):
        """Wait for every in-flight delivery to finish"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # Change feed

    async def _on_change(self, event: ChangeEvent):
        generation = self._generation
        chat_id = self.chat_id
        record = event.record

        if event.kind == ChangeKind.DELETE:
            message_id = (event.old_record or record).get("id")
            if message_id:
                self._apply(merge_change(self.messages, MessageChange(ChangeType.DELETE, message_id=message_id)))
            return

        if not record.get("id") or record.get("chat_id") not in (None, chat_id):
            return

        sender = await self._sender_for(record["sender_id"])
        if not self._is_current(generation):
            return

        change_type = ChangeType.INSERT if event.kind == ChangeKind.INSERT else ChangeType.UPDATE
        change = MessageChange(change_type, message=Message.from_row(record, sender=sender))
        self._apply(merge_change(self.messages, change))
        if change_type == ChangeType.INSERT:
            log_message_event(self.logger, "remote_insert", chat_id, message_id=record["id"])
