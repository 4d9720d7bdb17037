"""
Chat-update events handed from the protocol bridge to the ingestion pipeline.

Two shapes travel on the same channel and are told apart by ``kind``:

- ``live_message``: one message just received or sent. The chat carries the
  sender as its name (the live event has no better name) and the message
  time as its watermark.
- ``history_sync``: one conversation reconstructed from a history-sync
  batch, with its real name, every recoverable text message, and the
  newest of their timestamps as its watermark.
"""

import logging
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from chatstore.schemas import (
    ChatRecord,
    HistoryConversation,
    HistorySyncPayload,
    LiveMessagePayload,
    MessageRecord,
)

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    LIVE_MESSAGE = "live_message"
    HISTORY_SYNC = "history_sync"


class ChatUpdateEvent(BaseModel):
    """A chat plus the messages to apply to it, in order."""
    kind: EventKind
    chat: ChatRecord
    messages: tuple[MessageRecord, ...] = Field(default_factory=tuple)

    model_config = ConfigDict(frozen=True)


def live_message_event(payload: LiveMessagePayload) -> ChatUpdateEvent:
    message = MessageRecord(
        id=payload.id,
        chat_jid=payload.chat_jid,
        sender=payload.sender,
        content=payload.content or "",
        timestamp=payload.timestamp,
        is_from_me=payload.is_from_me,
    )
    return ChatUpdateEvent(
        kind=EventKind.LIVE_MESSAGE,
        chat=ChatRecord(
            jid=payload.chat_jid,
            name=payload.sender,
            last_message_time=payload.timestamp,
        ),
        messages=(message,),
    )


def history_conversation_event(conversation: HistoryConversation) -> Optional[ChatUpdateEvent]:
    """
    Rebuild one conversation. Entries without a message envelope, a key id
    or an extended-text body are skipped. Returns None for conversations
    with no id.
    """
    if not conversation.id:
        return None

    messages = []
    last_message_time = None
    for entry in conversation.messages:
        info = entry.message
        if info is None or info.message is None or not info.key.id:
            continue
        extended = info.message.extended_text_message
        content = extended.text if extended is not None else None
        if not content:
            continue

        timestamp = info.timestamp
        if last_message_time is None or timestamp > last_message_time:
            last_message_time = timestamp

        messages.append(MessageRecord(
            id=info.key.id,
            chat_jid=conversation.id,
            sender=info.key.participant or "",
            content=content,
            timestamp=timestamp,
            is_from_me=info.key.from_me,
        ))

    skipped = len(conversation.messages) - len(messages)
    if skipped:
        logger.debug(f"History sync for {conversation.id}: skipped {skipped} entries without text")

    return ChatUpdateEvent(
        kind=EventKind.HISTORY_SYNC,
        chat=ChatRecord(
            jid=conversation.id,
            name=conversation.name,
            last_message_time=last_message_time,
        ),
        messages=tuple(messages),
    )


def history_sync_events(payload: HistorySyncPayload) -> list[ChatUpdateEvent]:
    """One event per conversation in the batch, in batch order."""
    events = []
    for conversation in payload.conversations:
        event = history_conversation_event(conversation)
        if event is not None:
            events.append(event)
    return events


def events_from_payload(payload) -> list[ChatUpdateEvent]:
    """Dispatch a validated /events payload to the matching builder."""
    if isinstance(payload, LiveMessagePayload):
        return [live_message_event(payload)]
    if isinstance(payload, HistorySyncPayload):
        return history_sync_events(payload)
    raise TypeError(f"unsupported event payload: {type(payload).__name__}")
