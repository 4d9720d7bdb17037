"""
Pydantic schemas for records, query results and API payloads.

This module contains:
- Records written by the ingestion pipeline (ChatRecord, MessageRecord)
- Read-side views returned by the query engine
- Raw inbound event payloads from the protocol bridge
- Response models for the HTTP API
"""

from datetime import datetime, timezone
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


# =============================================================================
# Store Records
# =============================================================================

class ChatRecord(BaseModel):
    """Full view of a chat row. Upserts overwrite every field."""
    jid: str = Field(..., min_length=1, description="Chat JID")
    name: Optional[str] = Field(None, description="Display name, may be unknown")
    last_message_time: Optional[datetime] = Field(
        None,
        description="Timestamp of the latest message in this chat"
    )

    model_config = ConfigDict(from_attributes=True)


class MessageRecord(BaseModel):
    """A message row. Identity is (id, chat_jid)."""
    id: str = Field(..., min_length=1, description="Message id, unique per chat")
    chat_jid: str = Field(..., min_length=1, description="Owning chat JID")
    sender: str = Field("", description="Author JID or phone number")
    content: str = Field("", description="Message body; empty bodies are not stored")
    timestamp: datetime = Field(..., description="Message time (UTC)")
    is_from_me: bool = Field(False, description="True for outgoing messages")

    model_config = ConfigDict(from_attributes=True)


# =============================================================================
# Query Views
# =============================================================================

class MessageView(MessageRecord):
    """A message joined with the name of its chat."""
    chat_name: Optional[str] = Field(None, description="Name of the owning chat")


class ChatView(ChatRecord):
    """A chat, optionally enriched with its last message."""
    last_message: Optional[str] = Field(None, description="Content of the last message")
    last_sender: Optional[str] = Field(None, description="Sender of the last message")
    last_is_from_me: Optional[bool] = Field(None, description="Direction of the last message")
    is_group: bool = Field(False, description="True for group chats (@g.us)")


class Contact(BaseModel):
    """A contact derived from a direct chat row."""
    phone_number: str = Field(..., description="Local part of the JID")
    name: Optional[str] = Field(None, description="Display name")
    jid: str = Field(..., description="Contact JID")


class MessageContext(BaseModel):
    """A message with its neighbours in the same chat, both sides ascending."""
    message: MessageView
    before: list[MessageView] = Field(default_factory=list)
    after: list[MessageView] = Field(default_factory=list)


# =============================================================================
# Inbound Event Payloads (protocol bridge -> /events)
# =============================================================================

class LiveMessagePayload(BaseModel):
    """One decoded live message."""
    kind: Literal["live_message"]
    id: str = Field(..., min_length=1)
    chat_jid: str = Field(..., min_length=1)
    sender: str = ""
    # Absent for non-text messages; such messages are not stored
    content: Optional[str] = None
    timestamp: datetime
    is_from_me: bool = False


class HistoryMessageKey(BaseModel):
    id: str = ""
    participant: Optional[str] = None
    from_me: bool = Field(False, alias="fromMe")

    model_config = ConfigDict(populate_by_name=True)


class ExtendedTextMessage(BaseModel):
    text: Optional[str] = None


class HistoryMessageBody(BaseModel):
    conversation: Optional[str] = None
    extended_text_message: Optional[ExtendedTextMessage] = Field(None, alias="extendedTextMessage")

    model_config = ConfigDict(populate_by_name=True)


class WebMessageInfo(BaseModel):
    key: HistoryMessageKey = Field(default_factory=HistoryMessageKey)
    message_timestamp: int = Field(0, alias="messageTimestamp", ge=0)
    message: Optional[HistoryMessageBody] = None

    model_config = ConfigDict(populate_by_name=True)

    @property
    def timestamp(self) -> datetime:
        return datetime.fromtimestamp(self.message_timestamp, tz=timezone.utc)


class HistorySyncMsg(BaseModel):
    message: Optional[WebMessageInfo] = None


class HistoryConversation(BaseModel):
    id: str = ""
    name: Optional[str] = None
    messages: list[HistorySyncMsg] = Field(default_factory=list)


class HistorySyncPayload(BaseModel):
    """A history-sync batch: one or more reconstructed conversations."""
    kind: Literal["history_sync"]
    conversations: list[HistoryConversation] = Field(default_factory=list)


EventPayload = Annotated[
    Union[LiveMessagePayload, HistorySyncPayload],
    Field(discriminator="kind"),
]


# =============================================================================
# Pydantic Response Models
# =============================================================================

class EventsAcceptedResponse(BaseModel):
    """Response model for an accepted /events delivery."""
    status: str = Field(default="accepted", description="Operation status")
    events: int = Field(..., ge=0, description="Number of chat-update events queued")


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")


class ChatsListResponse(BaseModel):
    data: list[ChatView] = Field(default_factory=list)
    limit: int = Field(..., ge=1)
    page: int = Field(..., ge=0)


class MessagesListResponse(BaseModel):
    data: list[MessageView] = Field(default_factory=list)
    limit: int = Field(..., ge=1)
    page: int = Field(..., ge=0)


class ContactsListResponse(BaseModel):
    data: list[Contact] = Field(default_factory=list)


class MessagesQueryParams(BaseModel):
    """
    Filters accepted by GET /messages.

    ``after``/``before`` bound the timestamp inclusively.
    """
    after: Optional[datetime] = None
    before: Optional[datetime] = None
    sender: Optional[str] = None
    chat_jid: Optional[str] = None
    query: Optional[str] = None
    limit: int = 20
    page: int = 0
    include_context: bool = False
    context_before: int = Field(1, ge=0)
    context_after: int = Field(1, ge=0)

    @field_validator("after", "before")
    @classmethod
    def assume_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        """Naive bounds are interpreted as UTC."""
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v
