"""
Presence heartbeat - announces this client's status and mirrors everyone else's.

Presence is best-effort: each announcement overwrites the user's single status
row (last write wins) and failures are only logged.
"""

from typing import Any, Callable, Dict, List, Optional

from infrastructure.config.settings import PresenceConfig, get_config
from infrastructure.external.backend_client import get_backend_client
from infrastructure.external.backend_errors import BackendError
from infrastructure.external.realtime_client import ChangeEvent, ChangeKind, get_realtime_client
from infrastructure.monitoring.logging_service import get_logger
from services.chat_service.models import PresenceStatus, UserPresence


class PresenceHeartbeat:
    """
    Presence for the signed-in user.

    Args:
        backend: REST client used for the presence RPC and table
        realtime: Change feed client
        config: Presence settings
    """

    def __init__(self, backend=None, realtime=None, config: Optional[PresenceConfig] = None):
        self.logger = get_logger(__name__)
        self.backend = backend or get_backend_client()
        self.realtime = realtime or get_realtime_client()
        self.config = config or get_config().presence

        self.presence: Dict[str, UserPresence] = {}
        self.status: Optional[PresenceStatus] = None
        self.started = False
        self._channel = None
        self._listeners: List[Callable[[Dict[str, UserPresence]], Any]] = []

    def add_listener(self, callback: Callable[[Dict[str, UserPresence]], Any]):
        self._listeners.append(callback)

    def _notify(self):
        for callback in list(self._listeners):
            try:
                callback(dict(self.presence))
            except Exception as e:
                self.logger.error(f"Presence listener failed: {e}", exc_info=True)

    async def start(self):
        """Announce online, load current presence and follow changes"""
        if not self.config.enabled or self.started:
            return
        self.started = True
        await self.update_presence(PresenceStatus.ONLINE)

        channel = self.realtime.channel("user-presence")
        channel.on_postgres_changes("*", "user_presence", self._on_change)
        self._channel = channel
        try:
            await channel.subscribe()
        except BackendError as e:
            self.logger.warning(f"Presence subscription failed: {e}")

        await self.fetch_presence()

    async def stop(self):
        """Unload: stop following changes and announce offline"""
        if not self.started:
            return
        self.started = False
        channel, self._channel = self._channel, None
        if channel is not None:
            try:
                await channel.unsubscribe()
            except BackendError as e:
                self.logger.warning(f"Presence unsubscribe failed: {e}")
        await self.update_presence(PresenceStatus.OFFLINE)

    async def on_visibility_change(self, hidden: bool):
        """Offline while the page is hidden, online again when it is visible"""
        if not self.started:
            return
        await self.update_presence(PresenceStatus.OFFLINE if hidden else PresenceStatus.ONLINE)

    async def update_presence(self, status: PresenceStatus) -> bool:
        """
        Overwrite this user's presence row

        Returns:
            True if the announcement was accepted
        """
        status = PresenceStatus(status)
        try:
            await self.backend.rpc(self.config.rpc_name, {"status_param": status.value})
        except BackendError as e:
            self.logger.error(f"Error setting {status.value} status: {e}")
            return False
        self.status = status
        self.logger.debug(f"Presence set to {status.value}")
        return True

    async def fetch_presence(self):
        try:
            rows = await self.backend.select("user_presence")
        except BackendError as e:
            self.logger.error(f"Error fetching presence: {e}")
            return
        self.presence = {row["user_id"]: UserPresence.from_row(row) for row in rows}
        self._notify()

    def _on_change(self, event: ChangeEvent):
        if event.kind == ChangeKind.DELETE or not event.record.get("user_id"):
            return
        presence = UserPresence.from_row(event.record)
        self.presence[presence.user_id] = presence
        self._notify()

    def get_user_presence(self, user_id: str) -> Optional[UserPresence]:
        return self.presence.get(user_id)

    def is_user_online(self, user_id: str) -> bool:
        presence = self.get_user_presence(user_id)
        return presence is not None and presence.status == PresenceStatus.ONLINE
