"""Pydantic schemas for the public widget API.

The widget surface speaks camelCase JSON; fields are declared snake_case and
aliased, so handlers construct models by field name.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class WidgetModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# --------------------------------------------------------------------------
# Pre-chat form
# --------------------------------------------------------------------------


class PrechatField(WidgetModel):
    """Definition of a pre-chat form field. ``id`` is the stable matching key."""

    id: str = Field(..., min_length=1, max_length=64)
    type: Literal["text", "email", "phone", "select", "checkbox", "textarea"] = "text"
    label: str = Field(..., max_length=120)
    placeholder: str | None = Field(default=None, max_length=120)
    required: bool = False
    options: list[str] | None = None  # For select fields
    validation: dict[str, Any] | None = None
    order: int = 0


# --------------------------------------------------------------------------
# Session init
# --------------------------------------------------------------------------


class WidgetInitRequest(WidgetModel):
    widget_key: str = Field(..., min_length=1, max_length=64)
    visitor_id: str | None = Field(default=None, max_length=160)
    existing_session_token: str | None = Field(default=None, max_length=96)
    user_data: dict[str, Any] | None = None


class WidgetPublicConfig(WidgetModel):
    """Public-facing widget configuration (no sensitive data)."""

    primary_color: str
    position: str
    widget_title: str
    greeting_message: str | None
    auto_open: bool
    auto_open_delay: int
    show_agent_avatars: bool
    show_typing_indicator: bool
    play_notification_sound: bool
    default_department_id: UUID | None = None


class WidgetInitResponse(WidgetModel):
    session_token: str
    organization_id: UUID
    organization_name: str | None = None
    conversation_id: UUID | None = None
    config: WidgetPublicConfig


# --------------------------------------------------------------------------
# Departments
# --------------------------------------------------------------------------


class DepartmentRead(WidgetModel):
    id: UUID
    name: str
    description: str | None = None
    pre_chat_form: list[PrechatField] = Field(default_factory=list)


class DepartmentsResponse(WidgetModel):
    departments: list[DepartmentRead]


# --------------------------------------------------------------------------
# Conversations
# --------------------------------------------------------------------------


class CustomerData(WidgetModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    email: str | None = Field(default=None, max_length=255)
    name: str | None = Field(default=None, max_length=160)
    phone: str | None = Field(default=None, max_length=40)


class ConversationCreate(WidgetModel):
    # Accepted in the body for the first call; the header wins when both are present.
    session_token: str | None = None
    department_id: UUID | None = None
    pre_chat_data: dict[str, Any] = Field(default_factory=dict)
    customer_data: CustomerData | None = None


class ConversationRead(WidgetModel):
    id: UUID
    organization_id: UUID
    department_id: UUID
    customer_id: UUID | None = None
    widget_customer_id: UUID | None = None
    agent_id: UUID | None = None
    status: Literal["waiting", "active", "closed", "ticket"]
    pre_chat_data: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime
    assigned_at: datetime | None = None
    closed_at: datetime | None = None


class ConversationResponse(WidgetModel):
    conversation: ConversationRead


# --------------------------------------------------------------------------
# Messages
# --------------------------------------------------------------------------


class MessageSend(WidgetModel):
    content: str = Field(default="", max_length=5000)
    message_type: Literal["text", "image", "audio", "file"] = "text"
    media_url: str | None = Field(default=None, max_length=1024)
    media_type: str | None = Field(default=None, max_length=120)
    media_size: int | None = Field(default=None, ge=0)
    media_name: str | None = Field(default=None, max_length=255)
    client_message_id: str | None = Field(default=None, max_length=64)


class SenderRead(WidgetModel):
    id: UUID
    full_name: str | None = None
    avatar_url: str | None = None
    role: Literal["agent", "customer", "org_admin"]


class MessageRead(WidgetModel):
    id: UUID
    conversation_id: UUID
    sender_id: UUID | None = None
    widget_sender_id: UUID | None = None
    sender_type: Literal["agent", "customer", "system"]
    content: str
    message_type: str
    media_url: str | None = None
    media_type: str | None = None
    media_size: int | None = None
    media_name: str | None = None
    status: str
    client_message_id: str | None = None
    created_at: datetime
    sender: SenderRead | None = None


class MessageResponse(WidgetModel):
    message: MessageRead


class MessagesResponse(WidgetModel):
    messages: list[MessageRead]


# --------------------------------------------------------------------------
# Typing
# --------------------------------------------------------------------------


class TypingUpdate(WidgetModel):
    is_typing: bool


class TypingActorRead(WidgetModel):
    actor_key: str
    user_id: UUID | None = None
    widget_customer_id: UUID | None = None
    full_name: str | None = None
    is_typing: bool
    updated_at: datetime


class TypingResponse(WidgetModel):
    typing_indicators: list[TypingActorRead]


class AckResponse(WidgetModel):
    success: bool = True
