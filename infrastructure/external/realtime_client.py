"""
Realtime client - change feed and ephemeral broadcast over a websocket.

Frames are JSON objects ``{"topic", "event", "payload", "ref"}``. A channel
joins a topic with a config describing the row-change bindings it wants
(filtered server-side) and whether it takes part in broadcast. The socket is
kept alive with heartbeats and reconnected with exponential backoff; joined
channels are rejoined after a reconnect.
"""

import asyncio
import itertools
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union
from urllib.parse import urlencode

import aiohttp

from infrastructure.config.settings import BackendConfig, RealtimeConfig, get_config
from infrastructure.external.backend_errors import AuthorizationError, ConnectivityError
from infrastructure.monitoring.logging_service import get_logger
from infrastructure.resilience.retry_service import exponential_backoff_delay

logger = get_logger(__name__)

PHOENIX_TOPIC = "phoenix"

Callback = Callable[[Any], Union[None, Awaitable[None]]]


class ChangeKind(str, Enum):
    """Row change kinds delivered by the change feed"""
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


@dataclass
class ChangeEvent:
    """One row-level change notification"""
    kind: ChangeKind
    table: str
    record: Dict[str, Any] = field(default_factory=dict)
    old_record: Dict[str, Any] = field(default_factory=dict)
    schema: str = "public"
    commit_timestamp: Optional[str] = None


def encode_frame(topic: str, event: str, payload: Dict[str, Any], ref: Optional[str] = None,
                 join_ref: Optional[str] = None) -> str:
    frame = {"topic": topic, "event": event, "payload": payload, "ref": ref}
    if join_ref is not None:
        frame["join_ref"] = join_ref
    return json.dumps(frame)


def decode_frame(raw: str) -> Dict[str, Any]:
    frame = json.loads(raw)
    if not isinstance(frame, dict) or "event" not in frame:
        raise ValueError(f"Malformed realtime frame: {raw[:100]}")
    frame.setdefault("payload", {})
    return frame


def parse_change_payload(payload: Dict[str, Any]) -> Optional[ChangeEvent]:
    """
    Turn a ``postgres_changes`` payload into a ChangeEvent

    Returns:
        ChangeEvent, or None when the payload is not a row change
    """
    data = payload.get("data", payload)
    kind = data.get("type") or data.get("eventType")
    if kind not in ChangeKind.__members__:
        return None
    return ChangeEvent(
        kind=ChangeKind(kind),
        table=data.get("table", ""),
        schema=data.get("schema", "public"),
        record=data.get("record") or data.get("new") or {},
        old_record=data.get("old_record") or data.get("old") or {},
        commit_timestamp=data.get("commit_timestamp"),
    )


async def _invoke(callback: Callback, argument: Any, topic: str):
    """Run a listener; its failures are logged and never reach the socket loop"""
    try:
        result = callback(argument)
        if asyncio.iscoroutine(result):
            await result
    except Exception as e:
        logger.error(f"Realtime listener on '{topic}' failed: {e.__class__.__name__}: {e}", exc_info=True)


@dataclass
class _PostgresBinding:
    event: str
    table: str
    schema: str
    filter: Optional[str]
    callback: Callback

    def matches(self, change: ChangeEvent) -> bool:
        return (self.event in ("*", change.kind.value)
                and self.table == change.table
                and self.schema == change.schema)

    def to_config(self) -> Dict[str, Any]:
        config = {"event": self.event, "schema": self.schema, "table": self.table}
        if self.filter:
            config["filter"] = self.filter
        return config


class RealtimeChannel:
    """
    A subscription to one topic. Use as an async context manager to make sure
    the subscription is released on every exit path.
    """

    def __init__(self, client: 'RealtimeClient', name: str):
        self.client = client
        self.name = name
        self.topic = f"realtime:{name}"
        self.joined = False
        self.join_ref: Optional[str] = None
        self._postgres_bindings: List[_PostgresBinding] = []
        self._broadcast_bindings: Dict[str, List[Callback]] = {}

    def on_postgres_changes(self, event: str, table: str, callback: Callback,
                            schema: str = "public", filter: Optional[str] = None) -> 'RealtimeChannel':
        """
        Register a row-change listener

        Args:
            event: "INSERT", "UPDATE", "DELETE" or "*"
            table: Table name
            callback: Receives a ChangeEvent
            schema: Database schema
            filter: Server-side filter such as ``chat_id=eq.<id>``
        """
        self._postgres_bindings.append(_PostgresBinding(event, table, schema, filter, callback))
        return self

    def on_broadcast(self, event: str, callback: Callback) -> 'RealtimeChannel':
        """Register a broadcast listener; the callback receives the inner payload dict"""
        self._broadcast_bindings.setdefault(event, []).append(callback)
        return self

    def join_payload(self) -> Dict[str, Any]:
        payload = {
            "config": {
                "broadcast": {"self": False, "ack": False},
                "presence": {"key": ""},
                "postgres_changes": [b.to_config() for b in self._postgres_bindings],
            }
        }
        if self.client.access_token:
            payload["access_token"] = self.client.access_token
        return payload

    async def subscribe(self) -> 'RealtimeChannel':
        await self.client.join(self)
        return self

    async def unsubscribe(self):
        await self.client.leave(self)

    async def send_broadcast(self, event: str, payload: Dict[str, Any]):
        """Fire-and-forget broadcast to the other members of this topic"""
        await self.client.push(self.topic, "broadcast",
                               {"type": "broadcast", "event": event, "payload": payload},
                               join_ref=self.join_ref)

    async def handle(self, event: str, payload: Dict[str, Any]):
        """Route an inbound frame to the registered listeners"""
        if event == "postgres_changes":
            change = parse_change_payload(payload)
            if change is None:
                logger.debug(f"Ignoring non-row change on '{self.topic}'")
                return
            for binding in list(self._postgres_bindings):
                if binding.matches(change):
                    await _invoke(binding.callback, change, self.topic)
        elif event == "broadcast":
            for callback in list(self._broadcast_bindings.get(payload.get("event"), [])):
                await _invoke(callback, payload.get("payload", {}), self.topic)
        elif event == "system":
            logger.debug(f"System message on '{self.topic}': {payload}")
        elif event in ("phx_error", "phx_close"):
            logger.warning(f"Channel '{self.topic}' reported {event}")
            self.joined = False

    async def __aenter__(self) -> 'RealtimeChannel':
        return await self.subscribe()

    async def __aexit__(self, exc_type, exc, tb):
        await self.unsubscribe()


class RealtimeClient:
    """
    Websocket connection shared by all channels of one signed-in client.

    Args:
        config: Backend connection settings
        realtime_config: Heartbeat and reconnect settings
    """

    def __init__(self, config: Optional[BackendConfig] = None,
                 realtime_config: Optional[RealtimeConfig] = None):
        app_config = get_config()
        self.config = config or app_config.backend
        self.settings = realtime_config or app_config.realtime
        self.access_token: Optional[str] = None
        self.channels: Dict[str, RealtimeChannel] = {}
        self.connected = False

        self._refs = itertools.count(1)
        self._pending_replies: Dict[str, asyncio.Future] = {}
        self._session: Optional[aiohttp.ClientSession] = None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._listen_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._connect_lock = asyncio.Lock()
        self._should_reconnect = False

    @property
    def websocket_url(self) -> str:
        base = self.config.url.rstrip("/").replace("https://", "wss://").replace("http://", "ws://")
        query = urlencode({"apikey": self.config.anon_key, "vsn": "1.0.0"})
        return f"{base}/realtime/v1/websocket?{query}"

    def channel(self, name: str) -> RealtimeChannel:
        """Get the channel for a topic name, creating it if needed"""
        topic = f"realtime:{name}"
        if topic not in self.channels:
            self.channels[topic] = RealtimeChannel(self, name)
        return self.channels[topic]

    def _next_ref(self) -> str:
        return str(next(self._refs))

    async def set_access_token(self, token: Optional[str]):
        """Update the token and push it to every joined channel"""
        self.access_token = token
        if not token or not self.connected:
            return
        for channel in list(self.channels.values()):
            if channel.joined:
                await self.push(channel.topic, "access_token", {"access_token": token},
                                join_ref=channel.join_ref)

    async def connect(self):
        """Open the websocket (no-op when already connected)"""
        async with self._connect_lock:
            if self.connected:
                return
            self._should_reconnect = True
            await self._open_socket()
            self._listen_task = asyncio.create_task(self._listen())
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

    async def _open_socket(self):
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=None, connect=10, sock_read=None)
            )
        try:
            self._ws = await self._session.ws_connect(self.websocket_url, heartbeat=None)
        except aiohttp.ClientError as e:
            raise ConnectivityError(f"Cannot open realtime socket: {e.__class__.__name__}: {e}") from e
        self.connected = True
        logger.info("Realtime socket connected")

    async def disconnect(self):
        """Close the socket and stop background tasks"""
        self._should_reconnect = False
        for task in (self._heartbeat_task, self._listen_task):
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._heartbeat_task = None
        self._listen_task = None

        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        self._ws = None
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

        for future in self._pending_replies.values():
            if not future.done():
                future.cancel()
        self._pending_replies.clear()
        for channel in self.channels.values():
            channel.joined = False
        self.connected = False
        logger.info("Realtime socket disconnected")

    async def push(self, topic: str, event: str, payload: Dict[str, Any],
                   join_ref: Optional[str] = None) -> str:
        """Send a frame; returns its ref"""
        if not self.connected or self._ws is None:
            raise ConnectivityError(f"Realtime socket is not connected (push {event} to {topic})")
        ref = self._next_ref()
        try:
            await self._ws.send_str(encode_frame(topic, event, payload, ref=ref, join_ref=join_ref))
        except (aiohttp.ClientError, ConnectionResetError) as e:
            raise ConnectivityError(f"Realtime push failed: {e}") from e
        return ref

    async def join(self, channel: RealtimeChannel):
        """Join a channel's topic and wait for the server's acknowledgement"""
        await self.connect()
        self.channels[channel.topic] = channel

        loop = asyncio.get_running_loop()
        ref = self._next_ref()
        future = loop.create_future()
        self._pending_replies[ref] = future
        channel.join_ref = ref

        try:
            await self._ws.send_str(encode_frame(channel.topic, "phx_join", channel.join_payload(),
                                                 ref=ref, join_ref=ref))
            reply = await asyncio.wait_for(future, timeout=self.settings.join_timeout)
        except asyncio.TimeoutError as e:
            raise ConnectivityError(f"Timed out joining '{channel.topic}'") from e
        except (aiohttp.ClientError, ConnectionResetError) as e:
            raise ConnectivityError(f"Join '{channel.topic}' not sent: {e}") from e
        finally:
            self._pending_replies.pop(ref, None)

        status = reply.get("status")
        if status != "ok":
            reason = reply.get("response", {}).get("reason", status)
            if "auth" in str(reason).lower() or "token" in str(reason).lower():
                raise AuthorizationError(f"Join '{channel.topic}' rejected: {reason}")
            raise ConnectivityError(f"Join '{channel.topic}' failed: {reason}")

        channel.joined = True
        logger.info(f"Subscribed to '{channel.topic}'")

    async def leave(self, channel: RealtimeChannel):
        """Leave a channel's topic; always forgets the channel locally"""
        self.channels.pop(channel.topic, None)
        was_joined = channel.joined
        channel.joined = False
        if was_joined and self.connected:
            try:
                await self.push(channel.topic, "phx_leave", {}, join_ref=channel.join_ref)
            except ConnectivityError as e:
                logger.debug(f"Leave '{channel.topic}' not delivered: {e}")
        logger.info(f"Unsubscribed from '{channel.topic}'")

    async def dispatch(self, frame: Dict[str, Any]):
        """Route a decoded frame to the pending reply or to its channel"""
        event = frame.get("event")
        payload = frame.get("payload") or {}

        if event == "phx_reply":
            future = self._pending_replies.get(frame.get("ref") or "")
            if future is not None and not future.done():
                future.set_result(payload)
            return

        channel = self.channels.get(frame.get("topic", ""))
        if channel is None:
            logger.debug(f"Frame for unknown topic '{frame.get('topic')}' ignored")
            return
        await channel.handle(event, payload)

    async def _heartbeat_loop(self):
        """Send periodic heartbeat to keep the connection alive"""
        while True:
            try:
                await asyncio.sleep(self.settings.heartbeat_interval)
                if self.connected:
                    await self.push(PHOENIX_TOPIC, "heartbeat", {})
            except asyncio.CancelledError:
                break
            except ConnectivityError as e:
                logger.debug(f"Heartbeat not sent: {e}")

    async def _listen(self):
        """Read frames with auto-reconnect support"""
        reconnect_count = 0

        while self._should_reconnect:
            disconnect_reason = "unknown"
            try:
                async for message in self._ws:
                    if message.type == aiohttp.WSMsgType.TEXT:
                        reconnect_count = 0
                        try:
                            frame = decode_frame(message.data)
                        except ValueError as e:
                            logger.warning(f"Dropping realtime frame: {e}")
                            continue
                        await self.dispatch(frame)
                    elif message.type == aiohttp.WSMsgType.ERROR:
                        disconnect_reason = f"socket_error: {self._ws.exception()}"
                        break
                else:
                    disconnect_reason = "server_closed_connection"
            except asyncio.CancelledError:
                break
            except aiohttp.ClientError as e:
                disconnect_reason = f"client_error: {type(e).__name__}"

            self.connected = False
            for channel in self.channels.values():
                channel.joined = False
            logger.warning(f"Realtime socket disconnected: {disconnect_reason}")

            if not self._should_reconnect:
                break
            if reconnect_count >= self.settings.max_reconnect_attempts:
                logger.error(
                    f"Max realtime reconnection attempts ({self.settings.max_reconnect_attempts}) reached, giving up"
                )
                break

            delay = exponential_backoff_delay(reconnect_count, self.settings.reconnect_base_delay,
                                              self.settings.reconnect_max_delay)
            reconnect_count += 1
            logger.info(f"Reconnecting realtime socket ({reconnect_count}/"
                        f"{self.settings.max_reconnect_attempts}) in {delay:.1f}s")
            try:
                await asyncio.sleep(delay)
                await self._open_socket()
                await self._rejoin_channels()
            except asyncio.CancelledError:
                break
            except ConnectivityError as e:
                logger.warning(f"Realtime reconnect failed: {e}")
                continue

    async def _rejoin_channels(self):
        for channel in list(self.channels.values()):
            ref = self._next_ref()
            channel.join_ref = ref
            await self._ws.send_str(encode_frame(channel.topic, "phx_join", channel.join_payload(),
                                                 ref=ref, join_ref=ref))
            # The acknowledgement is not awaited here, the listener is this task
            channel.joined = True


# Global realtime client instance
_realtime_client: Optional[RealtimeClient] = None


def get_realtime_client() -> RealtimeClient:
    """Get the global realtime client instance"""
    global _realtime_client
    if _realtime_client is None:
        _realtime_client = RealtimeClient()
    return _realtime_client
