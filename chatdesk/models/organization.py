"""Organization-side records the engine reads but never authors."""

import uuid
from datetime import UTC, datetime

from sqlalchemy import Boolean, DateTime, Enum, ForeignKey, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSON, UUID
from sqlalchemy.ext.mutable import MutableList
from sqlalchemy.orm import Mapped, mapped_column, relationship

from chatdesk.db import Base
from chatdesk.models.enums import UserRole


class Organization(Base):
    __tablename__ = "organizations"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(160), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(UTC))

    departments = relationship("Department", back_populates="organization")


class User(Base):
    """Staff member or registered customer."""

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False
    )
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    full_name: Mapped[str | None] = mapped_column(String(160))
    avatar_url: Mapped[str | None] = mapped_column(String(500))
    role: Mapped[UserRole] = mapped_column(Enum(UserRole), default=UserRole.agent, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(UTC))

    organization = relationship("Organization")


class Department(Base):
    __tablename__ = "departments"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    # JSON array of pre-chat field definitions, each carrying a stable "id" and an "order".
    pre_chat_form: Mapped[list | None] = mapped_column(MutableList.as_mutable(JSON()))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(UTC))

    organization = relationship("Organization", back_populates="departments")


class WidgetSettings(Base):
    """Per-organization widget configuration, looked up by its public widget key."""

    __tablename__ = "widget_settings"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False
    )
    widget_key: Mapped[str] = mapped_column(String(64), unique=True, index=True, nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)

    # Supports exact matches ("example.com") and wildcards ("*.example.com")
    allowed_domains: Mapped[list | None] = mapped_column(JSON)

    # Appearance settings
    primary_color: Mapped[str] = mapped_column(String(20), default="#3B82F6")
    position: Mapped[str] = mapped_column(String(20), default="bottom-right")
    widget_title: Mapped[str] = mapped_column(String(80), default="Chat with us")
    greeting_message: Mapped[str] = mapped_column(Text, default="Hi there! How can we help?")
    auto_open: Mapped[bool] = mapped_column(Boolean, default=False)
    auto_open_delay: Mapped[int] = mapped_column(Integer, default=5)
    show_agent_avatars: Mapped[bool] = mapped_column(Boolean, default=True)
    show_typing_indicator: Mapped[bool] = mapped_column(Boolean, default=True)
    play_notification_sound: Mapped[bool] = mapped_column(Boolean, default=True)

    default_department_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("departments.id")
    )

    rate_limit_sessions_per_ip: Mapped[int] = mapped_column(Integer, default=20)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(UTC))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    organization = relationship("Organization")
    default_department = relationship("Department")
