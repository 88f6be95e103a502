"""
Pydantic schemas for messages, conversations and the HTTP surface.

This module contains:
- Message / MessageRecord: the transcript entry and the wire record every
  producer feeds into the merge function
- Provider webhook payload models (Meta Cloud API and 360Dialog shapes)
- Request/response models for the HTTP API
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


# =============================================================================
# Enums
# =============================================================================

class Direction(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class MessageStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


class ConversationStatus(str, Enum):
    QUEUED = "queued"
    ACTIVE = "active"
    ON_HOLD = "on_hold"
    CLOSED = "closed"


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# =============================================================================
# Transcript Models
# =============================================================================

class MessageContent(BaseModel):
    """
    Message body. Fields are not mutually exclusive: a template send carries
    both the template name and its resolved text.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    text: Optional[str] = Field(None, max_length=4096)
    media_ref: Optional[str] = None
    template_name: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def accept_plain_text(cls, data: Any) -> Any:
        # Push payloads sometimes carry the body as a bare string
        if isinstance(data, str):
            return {"text": data}
        return data


class Message(BaseModel):
    """
    One entry of a conversation transcript.

    `id` is the temporary client id while pending and the channel message id
    once the delivery channel has accepted the message.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str = Field(..., min_length=1)
    channel_message_id: Optional[str] = None
    conversation_id: str
    direction: Direction
    content: MessageContent
    status: MessageStatus
    created_at: Optional[datetime] = None
    sender: Optional[str] = None

    @field_validator("created_at")
    @classmethod
    def normalize_created_at(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(v)


class MessageRecord(BaseModel):
    """
    Message-shaped record delivered by push, poll or a send acknowledgement.

    Every field is optional; absent (or null) fields carry no information and
    never clear a field on the entry they are merged into. A record has to
    name at least one identifier.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: Optional[str] = None
    channel_message_id: Optional[str] = None
    conversation_id: Optional[str] = None
    direction: Optional[Direction] = None
    content: Optional[MessageContent] = None
    status: Optional[MessageStatus] = None
    created_at: Optional[datetime] = None
    sender: Optional[str] = None

    @field_validator("created_at")
    @classmethod
    def normalize_created_at(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(v)

    @model_validator(mode="after")
    def require_identifier(self) -> "MessageRecord":
        if not self.id and not self.channel_message_id:
            raise ValueError("record must carry id or channelMessageId")
        return self

    @classmethod
    def from_message(cls, message: Message) -> "MessageRecord":
        return cls.model_validate(message.model_dump())

    def present_fields(self) -> Dict[str, Any]:
        """Fields carried by this record, keyed by attribute name."""
        return {name: getattr(self, name) for name in type(self).model_fields if getattr(self, name) is not None}


class ChannelAck(BaseModel):
    """Acknowledgement returned by the delivery channel for an accepted send."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    channel_message_id: str
    status: MessageStatus = MessageStatus.SENT


# =============================================================================
# Provider Webhook Payload Models
# =============================================================================

class ProviderText(BaseModel):
    body: str = ""


class ProviderMedia(BaseModel):
    id: Optional[str] = None
    filename: Optional[str] = None
    caption: Optional[str] = None


class ProviderReaction(BaseModel):
    emoji: Optional[str] = None


class ProviderMessage(BaseModel):
    """
    Inbound message as sent by the provider.

    Validates:
    - id: non-empty provider message id (becomes channelMessageId)
    - from: phone number, normalized to E.164-like form (+ and digits)
    """
    id: str = Field(..., min_length=1)
    from_msisdn: str = Field(..., alias="from")
    timestamp: Optional[str] = None
    type: str = "text"
    text: Optional[ProviderText] = None
    image: Optional[ProviderMedia] = None
    audio: Optional[ProviderMedia] = None
    video: Optional[ProviderMedia] = None
    document: Optional[ProviderMedia] = None
    sticker: Optional[ProviderMedia] = None
    reaction: Optional[ProviderReaction] = None

    model_config = {"populate_by_name": True, "extra": "ignore"}

    @field_validator("from_msisdn")
    @classmethod
    def normalize_phone(cls, v: str) -> str:
        digits = "".join(ch for ch in v if ch.isdigit())
        if not digits:
            raise ValueError("from must contain at least one digit")
        return "+" + digits

    def sent_at(self) -> Optional[datetime]:
        """Provider timestamps are unix seconds as strings."""
        if not self.timestamp:
            return None
        try:
            return datetime.fromtimestamp(int(self.timestamp), tz=timezone.utc)
        except ValueError:
            return None

    def to_content(self) -> MessageContent:
        if self.type == "text":
            return MessageContent(text=self.text.body if self.text else "")
        if self.type == "reaction":
            return MessageContent(text=(self.reaction.emoji if self.reaction else None) or "[reaction]")
        media = getattr(self, self.type, None) if self.type in ("image", "audio", "video", "document", "sticker") else None
        if isinstance(media, ProviderMedia):
            label = media.caption or (f"[{self.type}: {media.filename}]" if media.filename else f"[{self.type}]")
            return MessageContent(text=label, media_ref=media.id)
        return MessageContent(text=f"[{self.type or 'unknown'}]")


class ProviderStatus(BaseModel):
    """Delivery status update for a message previously sent through the channel."""
    id: str = Field(..., min_length=1)
    status: str
    timestamp: Optional[str] = None
    recipient_id: Optional[str] = None

    model_config = {"extra": "ignore"}

    def to_status(self) -> Optional[MessageStatus]:
        try:
            return MessageStatus(self.status)
        except ValueError:
            return None


class ProviderProfile(BaseModel):
    name: Optional[str] = None


class ProviderContact(BaseModel):
    wa_id: Optional[str] = None
    profile: Optional[ProviderProfile] = None

    model_config = {"extra": "ignore"}


class ChangeValue(BaseModel):
    messages: list[ProviderMessage] = Field(default_factory=list)
    statuses: list[ProviderStatus] = Field(default_factory=list)
    contacts: list[ProviderContact] = Field(default_factory=list)

    model_config = {"extra": "ignore"}


class Change(BaseModel):
    value: Optional[ChangeValue] = None

    model_config = {"extra": "ignore"}


class Entry(BaseModel):
    changes: list[Change] = Field(default_factory=list)

    model_config = {"extra": "ignore"}


class WebhookPayload(BaseModel):
    """
    Provider webhook body.

    Meta Cloud API nests data under entry[].changes[].value; 360Dialog may
    also send messages/statuses/contacts at the top level.
    """
    entry: list[Entry] = Field(default_factory=list)
    messages: list[ProviderMessage] = Field(default_factory=list)
    statuses: list[ProviderStatus] = Field(default_factory=list)
    contacts: list[ProviderContact] = Field(default_factory=list)

    model_config = {"extra": "ignore"}

    def values(self) -> list[ChangeValue]:
        found = [change.value for entry in self.entry for change in entry.changes if change.value is not None]
        if self.messages or self.statuses or self.contacts:
            found.append(ChangeValue(messages=self.messages, statuses=self.statuses, contacts=self.contacts))
        return found


# =============================================================================
# Pydantic Request Models
# =============================================================================

class SendMessageRequest(BaseModel):
    content: MessageContent
    sender: Optional[str] = None

    @field_validator("content")
    @classmethod
    def require_body(cls, v: MessageContent) -> MessageContent:
        if not (v.text or v.media_ref or v.template_name):
            raise ValueError("content must carry text, mediaRef or templateName")
        return v


class ConversationCreateRequest(BaseModel):
    phone: str = Field(..., min_length=2, description="Customer phone number in E.164 format")
    name: Optional[str] = Field(None, max_length=255)

    @field_validator("phone")
    @classmethod
    def validate_e164_format(cls, v: str) -> str:
        if not v.startswith("+"):
            raise ValueError("phone must start with '+'")
        if not v[1:].isdigit():
            raise ValueError("phone must contain only digits after '+'")
        return v


class ConversationStatusUpdate(BaseModel):
    status: ConversationStatus


# =============================================================================
# Pydantic Response Models
# =============================================================================

class WebhookResponse(BaseModel):
    """Response model for webhook processing."""
    status: str = Field(default="ok", description="Operation status")
    messages: int = Field(default=0, ge=0, description="Inbound messages stored")
    statuses: int = Field(default=0, ge=0, description="Status updates applied")


class ErrorResponse(BaseModel):
    detail: str = Field(..., description="Error description")


class ConversationResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    id: str
    phone: str
    name: Optional[str] = None
    status: ConversationStatus
    last_message_at: Optional[datetime] = None

    @field_validator("last_message_at")
    @classmethod
    def normalize_last_message_at(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(v)


class MessagesListResponse(BaseModel):
    """
    Snapshot of a conversation's messages with pagination.

    - data: messages ordered by createdAt ASC, id ASC
    - total: total messages in the conversation (ignoring pagination)
    """
    data: list[MessageRecord] = Field(default_factory=list)
    total: int = Field(..., ge=0)
    limit: int = Field(..., ge=1, le=500)
    offset: int = Field(..., ge=0)


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
