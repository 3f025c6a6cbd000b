"""
Pure list transformations for the visible message list.

Every function takes the current list and returns a new one; nothing here
performs I/O or mutates its input. The message store applies them in order on
the event loop, so replies to local sends and change feed notifications can
arrive in any order and still converge on one entry per logical message.
"""

import time
import uuid
from datetime import datetime
from typing import List, Optional

from services.chat_service.models import (
    ChangeType,
    DeliveryState,
    Message,
    MessageChange,
    MessageKind,
    Mood,
    SenderSummary,
    utc_now,
)

PROVISIONAL_PREFIX = "temp-"
FAILED_PREFIX = "failed-"

FAILED_MARKER = "❌ Failed to send: "
RETRYING_MARKER = "🔄 Retrying: "
PERMANENT_FAILURE_MARKER = "💀 Failed permanently: "


def new_provisional_id(now_ms: Optional[int] = None) -> str:
    """Time-ordered, locally unique token for a message not yet stored"""
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    return f"{PROVISIONAL_PREFIX}{now_ms}-{uuid.uuid4().hex[:8]}"


def build_provisional(chat_id: str, sender_id: str, content: str,
                      kind: MessageKind = MessageKind.TEXT, mood: Mood = Mood.NEUTRAL,
                      sender: Optional[SenderSummary] = None, reply_to_id: Optional[str] = None,
                      created_at: Optional[datetime] = None) -> Message:
    local_id = new_provisional_id()
    text = content.strip()
    return Message(
        id=local_id,
        chat_id=chat_id,
        sender_id=sender_id,
        content=text,
        created_at=created_at or utc_now(),
        kind=kind,
        mood=mood,
        sender=sender,
        state=DeliveryState.PROVISIONAL,
        local_id=local_id,
        original_content=text,
        reply_to_id=reply_to_id,
    )


def insert_sorted(messages: List[Message], message: Message) -> List[Message]:
    """Insert keeping ascending creation time; ties go after existing entries"""
    index = len(messages)
    while index > 0 and messages[index - 1].created_at > message.created_at:
        index -= 1
    return messages[:index] + [message] + messages[index:]


def index_of(messages: List[Message], message_id: str) -> Optional[int]:
    for i, message in enumerate(messages):
        if message.id == message_id:
            return i
    return None


def index_of_local(messages: List[Message], local_id: str) -> Optional[int]:
    for i, message in enumerate(messages):
        if message.local_id == local_id:
            return i
    return None


def find_pending_match(messages: List[Message], sender_id: str, content: str) -> Optional[int]:
    """Index of the first provisional or failed entry with this sender and text"""
    text = content.strip()
    for i, message in enumerate(messages):
        if message.is_pending and message.sender_id == sender_id and message.text == text:
            return i
    return None


def _pending_id(local_id: str, state: DeliveryState) -> str:
    if state == DeliveryState.PROVISIONAL:
        return local_id
    return FAILED_PREFIX + local_id


def _confirm(pending: Message, confirmed: Message) -> Message:
    return confirmed.with_changes(
        state=DeliveryState.CONFIRMED,
        local_id=pending.local_id,
        original_content=None,
        sender=confirmed.sender or pending.sender,
    )


def reconcile(messages: List[Message], local_id: str, confirmed: Message) -> List[Message]:
    """
    Replace the pending entry of a local send with its stored row

    The entry is found by its local token first, then by (sender, text).
    When the stored row is already visible because the change feed delivered
    it first, the pending entry is dropped instead.
    """
    index = index_of_local(messages, local_id)
    if index is None:
        index = find_pending_match(messages, confirmed.sender_id, confirmed.text)
    if index is None:
        return list(messages)

    result = list(messages)
    current = result[index]
    duplicate = index_of(result, confirmed.id)

    if duplicate is not None and duplicate != index:
        shown = result[duplicate]
        if current.is_pending and shown.local_id and shown.local_id != local_id:
            # The feed matched this row to another identical pending send;
            # hand our entry over to that send so each still has one entry.
            result[duplicate] = _confirm(current, confirmed)
            result[index] = current.with_changes(
                local_id=shown.local_id, id=_pending_id(shown.local_id, current.state)
            )
            return result
        del result[index]
        return result

    result[index] = _confirm(current, confirmed)
    return result


def _update_local(messages: List[Message], local_id: str, **changes) -> List[Message]:
    index = index_of_local(messages, local_id)
    if index is None:
        return list(messages)
    result = list(messages)
    result[index] = result[index].with_changes(**changes)
    return result


def mark_failed(messages: List[Message], local_id: str) -> List[Message]:
    index = index_of_local(messages, local_id)
    if index is None or not messages[index].is_pending:
        return list(messages)
    text = messages[index].text
    return _update_local(
        messages, local_id,
        id=FAILED_PREFIX + local_id,
        content=FAILED_MARKER + text,
        kind=MessageKind.TEXT,
        state=DeliveryState.FAILED,
        original_content=text,
    )


def mark_retrying(messages: List[Message], local_id: str) -> List[Message]:
    index = index_of_local(messages, local_id)
    if index is None or messages[index].state != DeliveryState.FAILED:
        return list(messages)
    return _update_local(messages, local_id, content=RETRYING_MARKER + messages[index].text)


def mark_permanently_failed(messages: List[Message], local_id: str) -> List[Message]:
    index = index_of_local(messages, local_id)
    if index is None or not messages[index].is_pending:
        return list(messages)
    text = messages[index].text
    return _update_local(
        messages, local_id,
        id=FAILED_PREFIX + local_id,
        content=PERMANENT_FAILURE_MARKER + text,
        kind=MessageKind.TEXT,
        state=DeliveryState.PERMANENTLY_FAILED,
        original_content=text,
    )


def reset_for_manual_retry(messages: List[Message], local_id: str,
                           kind: MessageKind = MessageKind.TEXT) -> List[Message]:
    """Make a permanently failed entry provisional again, in the same position"""
    index = index_of_local(messages, local_id)
    if index is None or messages[index].state != DeliveryState.PERMANENTLY_FAILED:
        return list(messages)
    text = messages[index].text
    return _update_local(
        messages, local_id,
        id=local_id,
        content=text,
        kind=kind,
        state=DeliveryState.PROVISIONAL,
        original_content=text,
    )


def merge_change(messages: List[Message], change: MessageChange) -> List[Message]:
    """Apply one change feed event"""
    if change.type == ChangeType.INSERT:
        incoming = change.message
        if incoming is None or index_of(messages, incoming.id) is not None:
            return list(messages)
        index = find_pending_match(messages, incoming.sender_id, incoming.text)
        if index is not None:
            result = list(messages)
            result[index] = _confirm(result[index], incoming)
            return result
        return insert_sorted(messages, incoming)

    if change.type == ChangeType.UPDATE:
        incoming = change.message
        index = index_of(messages, incoming.id) if incoming is not None else None
        if index is None:
            return list(messages)
        result = list(messages)
        current = result[index]
        result[index] = incoming.with_changes(
            sender=incoming.sender or current.sender,
            local_id=current.local_id,
        )
        return result

    if change.type == ChangeType.DELETE:
        target = change.target_id
        return [m for m in messages if m.id != target]

    return list(messages)
