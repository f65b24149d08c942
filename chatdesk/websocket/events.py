"""Frames exchanged with widget push connections."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field, ValidationError


class EventType(StrEnum):
    """Server-to-widget events."""

    MESSAGE_NEW = "message_new"
    CONVERSATION_UPDATED = "conversation_updated"
    # Sent to a session's own connections when a conversation is attached to it.
    CONVERSATION_CREATED = "conversation_created"
    USER_TYPING = "user_typing"
    CONNECTION_ACK = "connection_ack"
    HEARTBEAT = "heartbeat"


class WebSocketEvent(BaseModel):
    event: EventType
    data: dict[str, Any]
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))

    def to_frame(self) -> dict[str, Any]:
        """JSON-ready dict, as sent over the socket and through pub/sub."""
        return self.model_dump(mode="json")


class InboundMessageType(StrEnum):
    SUBSCRIBE = "subscribe"
    UNSUBSCRIBE = "unsubscribe"
    TYPING = "typing"
    PING = "ping"


class InboundMessage(BaseModel):
    """Widget-to-server frame."""

    type: InboundMessageType
    conversation_id: str | None = None
    is_typing: bool | None = None

    @classmethod
    def parse(cls, raw: str) -> InboundMessage | None:
        """Decode one text frame; None when it is not valid JSON or not a known frame."""
        try:
            return cls.model_validate(json.loads(raw))
        except (json.JSONDecodeError, ValidationError):
            return None

    @property
    def typing_state(self) -> bool:
        # A bare typing frame means "started typing".
        return True if self.is_typing is None else self.is_typing
