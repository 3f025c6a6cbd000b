"""
In-memory stand-ins for the backend and realtime clients used by the tests.
"""

import asyncio
import copy
import itertools
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from infrastructure.external.realtime_client import RealtimeChannel


def _literal(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    return str(value)


def _condition(row: Dict[str, Any], column: str, op: str, value: str) -> bool:
    current = row.get(column)
    if op == "eq":
        return _literal(current) == value
    if op == "neq":
        return _literal(current) != value
    if op == "in":
        return _literal(current) in value.strip("()").split(",")
    if op == "cs":
        wanted = [v for v in value.strip("{}").split(",") if v]
        return all(v in (current or []) for v in wanted)
    if op == "ilike":
        return value.strip("*%").lower() in str(current or "").lower()
    raise ValueError(f"Unsupported filter operator: {op}")


def matches(row: Dict[str, Any], filters: Sequence[Tuple[str, str]]) -> bool:
    for column, expression in filters:
        if column == "or":
            parts = expression.strip("()").split(",")
            if not any(_condition(row, *part.split(".", 2)) for part in parts):
                return False
            continue
        op, _, value = expression.partition(".")
        if not _condition(row, column, op, value):
            return False
    return True


class FakeBackend:
    """Tables as lists of dicts, with programmable failures and delays"""

    def __init__(self):
        self.tables: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
        self.calls: List[Tuple[str, str]] = []
        self.access_token: Optional[str] = None

        self.insert_failures: List[Exception] = []
        self.select_failures: List[Exception] = []
        self.insert_delay = 0.0
        self.select_delay = 0.0
        self.table_delays: Dict[str, float] = {}
        self.rpc_results: Dict[str, Any] = {}
        self.rpc_failures: Dict[str, Exception] = {}
        self.rpc_calls: List[Tuple[str, Dict[str, Any]]] = []

        self.health_error: Optional[Exception] = None
        self.auth_payload: Optional[Dict[str, Any]] = None
        self.auth_error: Optional[Exception] = None
        self.sign_out_error: Optional[Exception] = None

        self._ids = itertools.count(1)
        self._clock = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def next_timestamp(self) -> str:
        self._clock += timedelta(seconds=1)
        return self._clock.isoformat()

    def add_row(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        self.tables[table].append(dict(row))
        return row

    def set_access_token(self, token: Optional[str]):
        self.access_token = token

    async def close(self):
        pass

    async def select(self, table: str, columns: str = "*", filters: Sequence[Tuple[str, str]] = (),
                     order: Optional[str] = None, ascending: bool = True,
                     limit: Optional[int] = None) -> List[Dict[str, Any]]:
        self.calls.append(("select", table))
        delay = self.table_delays.get(table, self.select_delay)
        if delay:
            await asyncio.sleep(delay)
        if self.select_failures:
            raise self.select_failures.pop(0)
        rows = [copy.deepcopy(r) for r in self.tables[table] if matches(r, filters)]
        if order:
            rows.sort(key=lambda r: r.get(order) or "", reverse=not ascending)
        if limit is not None:
            rows = rows[:limit]
        return rows

    async def select_one(self, table: str, columns: str = "*",
                         filters: Sequence[Tuple[str, str]] = ()) -> Optional[Dict[str, Any]]:
        rows = await self.select(table, columns=columns, filters=filters, limit=1)
        return rows[0] if rows else None

    async def insert(self, table: str, row: Dict[str, Any], columns: str = "*") -> Dict[str, Any]:
        self.calls.append(("insert", table))
        if self.insert_delay:
            await asyncio.sleep(self.insert_delay)
        if self.insert_failures:
            raise self.insert_failures.pop(0)
        stored = dict(row)
        stored.setdefault("id", f"{table}-{next(self._ids)}")
        stored.setdefault("created_at", self.next_timestamp())
        self.tables[table].append(stored)
        return copy.deepcopy(stored)

    async def update(self, table: str, values: Dict[str, Any], filters: Sequence[Tuple[str, str]],
                     columns: str = "*") -> List[Dict[str, Any]]:
        self.calls.append(("update", table))
        updated = []
        for row in self.tables[table]:
            if matches(row, filters):
                row.update(values)
                updated.append(copy.deepcopy(row))
        return updated

    async def delete(self, table: str, filters: Sequence[Tuple[str, str]]) -> None:
        self.calls.append(("delete", table))
        self.tables[table] = [r for r in self.tables[table] if not matches(r, filters)]

    async def rpc(self, function: str, params: Optional[Dict[str, Any]] = None) -> Any:
        self.rpc_calls.append((function, dict(params or {})))
        if function in self.rpc_failures:
            raise self.rpc_failures[function]
        return self.rpc_results.get(function)

    async def health_check(self) -> bool:
        if self.health_error is not None:
            raise self.health_error
        return True

    async def sign_up(self, email: str, password: str) -> Dict[str, Any]:
        if self.auth_error is not None:
            raise self.auth_error
        return self.auth_payload

    async def sign_in_with_password(self, email: str, password: str) -> Dict[str, Any]:
        if self.auth_error is not None:
            raise self.auth_error
        return self.auth_payload

    async def refresh_session(self, refresh_token: str) -> Dict[str, Any]:
        return self.auth_payload

    async def sign_out(self) -> None:
        if self.sign_out_error is not None:
            raise self.sign_out_error


class FakeRealtime:
    """
    Realtime client double: channels are real RealtimeChannel objects, joins
    and pushes are recorded instead of going over a socket.
    """

    def __init__(self):
        self.channels: Dict[str, RealtimeChannel] = {}
        self.access_token: Optional[str] = None
        self.pushed: List[Tuple[str, str, Dict[str, Any]]] = []
        self.joined_topics: List[str] = []
        self.left_topics: List[str] = []
        self.join_error: Optional[Exception] = None

    def channel(self, name: str) -> RealtimeChannel:
        topic = f"realtime:{name}"
        if topic not in self.channels:
            self.channels[topic] = RealtimeChannel(self, name)
        return self.channels[topic]

    async def join(self, channel: RealtimeChannel):
        if self.join_error is not None:
            raise self.join_error
        self.channels[channel.topic] = channel
        channel.joined = True
        self.joined_topics.append(channel.topic)

    async def leave(self, channel: RealtimeChannel):
        self.channels.pop(channel.topic, None)
        channel.joined = False
        self.left_topics.append(channel.topic)

    async def push(self, topic: str, event: str, payload: Dict[str, Any], join_ref: Optional[str] = None) -> str:
        self.pushed.append((topic, event, payload))
        return str(len(self.pushed))

    async def set_access_token(self, token: Optional[str]):
        self.access_token = token

    async def disconnect(self):
        self.channels.clear()

    @property
    def active_topics(self) -> List[str]:
        return [topic for topic, channel in self.channels.items() if channel.joined]

    async def emit_change(self, name: str, kind: str, table: str, record: Dict[str, Any],
                          old_record: Optional[Dict[str, Any]] = None):
        channel = self.channels.get(f"realtime:{name}")
        if channel is None or not channel.joined:
            return
        await channel.handle("postgres_changes", {"data": {
            "type": kind,
            "table": table,
            "schema": "public",
            "record": record,
            "old_record": old_record or {},
            "commit_timestamp": record.get("created_at"),
        }})

    async def emit_broadcast(self, name: str, event: str, payload: Dict[str, Any]):
        channel = self.channels.get(f"realtime:{name}")
        if channel is None or not channel.joined:
            return
        await channel.handle("broadcast", {"type": "broadcast", "event": event, "payload": payload})

    def broadcasts(self, name: str) -> List[Dict[str, Any]]:
        topic = f"realtime:{name}"
        return [payload["payload"] for t, event, payload in self.pushed if t == topic and event == "broadcast"]


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds
