"""
Typing indicator over an ephemeral broadcast channel.

Outgoing "typing" signals are throttled while the user composes and a
"stopped" signal follows a short idle period. Incoming entries expire on their
own, so a lost "stopped" signal (closed tab) never leaves a ghost behind.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from infrastructure.config.settings import TypingConfig, get_config
from infrastructure.external.backend_errors import BackendError
from infrastructure.external.realtime_client import get_realtime_client
from infrastructure.monitoring.logging_service import get_logger
from services.chat_service.models import SenderSummary

TYPING_EVENT = "typing"


@dataclass
class TypingUser:
    user_id: str
    user_name: str
    user_avatar: str
    last_seen: float


def format_typing_text(names: List[str]) -> str:
    """Human readable indicator text, empty when nobody is typing"""
    if not names:
        return ""
    if len(names) == 1:
        return f"{names[0]} is typing"
    if len(names) == 2:
        return f"{names[0]} and {names[1]} are typing"
    return f"{names[0]} and {len(names) - 1} others are typing"


class TypingIndicator:
    """
    Typing state for one conversation.

    Args:
        chat_id: Conversation identifier
        user_provider: Returns the signed-in user's summary
        realtime: Realtime client used for the broadcast channel
        config: Typing timings
        clock: Monotonic clock in seconds, injectable for tests
    """

    def __init__(self, chat_id: str, user_provider: Callable[[], Optional[SenderSummary]],
                 realtime=None, config: Optional[TypingConfig] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.logger = get_logger(__name__)
        self.chat_id = chat_id
        self.user_provider = user_provider
        self.realtime = realtime or get_realtime_client()
        self.config = config or get_config().typing
        self.clock = clock

        self.is_typing = False
        self._last_sent: Optional[float] = None
        self._idle_task: Optional[asyncio.Task] = None
        self._typing: Dict[str, TypingUser] = {}
        self._expiry_handles: Dict[str, asyncio.TimerHandle] = {}
        self._listeners: List[Callable[[List[TypingUser]], Any]] = []
        self._channel = None

    @property
    def topic_name(self) -> str:
        return f"typing:{self.chat_id}"

    async def start(self):
        channel = self.realtime.channel(self.topic_name)
        channel.on_broadcast(TYPING_EVENT, self.handle_signal)
        self._channel = channel
        try:
            await channel.subscribe()
        except BackendError as e:
            self.logger.warning(f"Typing indicator unavailable for chat {self.chat_id}: {e}")

    async def stop(self):
        """Announce stop, drop timers and leave the channel"""
        await self.stop_typing()
        for handle in self._expiry_handles.values():
            handle.cancel()
        self._expiry_handles.clear()
        self._typing.clear()
        channel, self._channel = self._channel, None
        if channel is not None:
            await channel.unsubscribe()

    async def __aenter__(self) -> 'TypingIndicator':
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()

    def add_listener(self, callback: Callable[[List[TypingUser]], Any]):
        self._listeners.append(callback)

    # Outgoing

    async def notify_typing(self):
        """Call on every keystroke"""
        now = self.clock()
        if not self.is_typing or self._last_sent is None or now - self._last_sent >= self.config.throttle_interval:
            self.is_typing = True
            self._last_sent = now
            await self._send(True)
        self._arm_idle_timer()

    async def stop_typing(self):
        current = asyncio.current_task()
        if self._idle_task is not None and self._idle_task is not current and not self._idle_task.done():
            self._idle_task.cancel()
        self._idle_task = None
        if self.is_typing:
            self.is_typing = False
            self._last_sent = None
            await self._send(False)

    def _arm_idle_timer(self):
        if self._idle_task is not None and not self._idle_task.done():
            self._idle_task.cancel()
        self._idle_task = asyncio.ensure_future(self._stop_when_idle())

    async def _stop_when_idle(self):
        await asyncio.sleep(self.config.idle_timeout)
        await self.stop_typing()

    async def _send(self, is_typing: bool):
        user = self.user_provider()
        if user is None or self._channel is None:
            return
        payload = {
            "user_id": user.id,
            "user_name": user.name,
            "user_avatar": user.avatar_url,
            "is_typing": is_typing,
        }
        try:
            await self._channel.send_broadcast(TYPING_EVENT, payload)
        except BackendError as e:
            self.logger.debug(f"Typing signal not sent: {e}")

    # Incoming

    def handle_signal(self, payload: Dict[str, Any]):
        """Apply a typing signal broadcast by another participant"""
        user_id = payload.get("user_id")
        me = self.user_provider()
        if not user_id or (me is not None and user_id == me.id):
            return

        if payload.get("is_typing"):
            now = self.clock()
            entry = self._typing.get(user_id)
            if entry is None:
                self._typing[user_id] = TypingUser(
                    user_id=user_id,
                    user_name=payload.get("user_name") or "Someone",
                    user_avatar=payload.get("user_avatar") or "",
                    last_seen=now,
                )
            else:
                entry.last_seen = now
            self._schedule_expiry(user_id)
        else:
            self._remove(user_id)
        self._notify()

    def _schedule_expiry(self, user_id: str):
        handle = self._expiry_handles.pop(user_id, None)
        if handle is not None:
            handle.cancel()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop: expiry is still applied lazily by typing_users()
            return
        self._expiry_handles[user_id] = loop.call_later(self.config.expiry, self._expire, user_id)

    def _expire(self, user_id: str):
        self._expiry_handles.pop(user_id, None)
        entry = self._typing.get(user_id)
        if entry is not None and self.clock() - entry.last_seen >= self.config.expiry:
            self._remove(user_id)
            self._notify()

    def _remove(self, user_id: str):
        self._typing.pop(user_id, None)
        handle = self._expiry_handles.pop(user_id, None)
        if handle is not None:
            handle.cancel()

    def _notify(self):
        users = self.typing_users()
        for callback in list(self._listeners):
            try:
                callback(users)
            except Exception as e:
                self.logger.error(f"Typing listener failed: {e}", exc_info=True)

    def typing_users(self) -> List[TypingUser]:
        """Participants currently typing, in the order they started"""
        now = self.clock()
        for user_id in [uid for uid, u in self._typing.items() if now - u.last_seen >= self.config.expiry]:
            self._remove(user_id)
        return list(self._typing.values())

    def typing_text(self) -> str:
        return format_typing_text([u.user_name for u in self.typing_users()])
