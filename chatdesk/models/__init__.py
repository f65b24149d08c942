from chatdesk.models.conversation import Conversation, Message
from chatdesk.models.enums import (
    ConversationStatus,
    DeviceType,
    MessageStatus,
    MessageType,
    PrechatFieldType,
    SenderType,
    UserRole,
)
from chatdesk.models.organization import Department, Organization, User, WidgetSettings
from chatdesk.models.presence import TypingIndicator
from chatdesk.models.widget import WidgetCustomer, WidgetSession

__all__ = [
    "Conversation",
    "ConversationStatus",
    "Department",
    "DeviceType",
    "Message",
    "MessageStatus",
    "MessageType",
    "Organization",
    "PrechatFieldType",
    "SenderType",
    "TypingIndicator",
    "User",
    "UserRole",
    "WidgetCustomer",
    "WidgetSession",
    "WidgetSettings",
]
