import enum


class UserRole(enum.Enum):
    org_admin = "org_admin"
    agent = "agent"
    customer = "customer"


class DeviceType(enum.Enum):
    desktop = "desktop"
    mobile = "mobile"
    tablet = "tablet"


class ConversationStatus(enum.Enum):
    waiting = "waiting"
    active = "active"
    closed = "closed"
    ticket = "ticket"


class SenderType(enum.Enum):
    agent = "agent"
    customer = "customer"
    system = "system"


class MessageType(enum.Enum):
    text = "text"
    image = "image"
    audio = "audio"
    file = "file"
    system = "system"


class MessageStatus(enum.Enum):
    sent = "sent"
    delivered = "delivered"
    read = "read"


class PrechatFieldType(enum.Enum):
    text = "text"
    email = "email"
    phone = "phone"
    select = "select"
    checkbox = "checkbox"
    textarea = "textarea"
