"""Widget visitor sessions and the visitor profiles conversations hang off."""

import uuid
from datetime import UTC, datetime

from sqlalchemy import Boolean, DateTime, Enum, ForeignKey, Index, String, UniqueConstraint, text
from sqlalchemy.dialects.postgresql import JSON, UUID
from sqlalchemy.ext.mutable import MutableDict
from sqlalchemy.orm import Mapped, mapped_column, relationship

from chatdesk.db import Base
from chatdesk.models.enums import DeviceType


class WidgetSession(Base):
    """One row per browser session lineage.

    At most one active session may exist per (visitor_id, widget_key); the
    partial unique index is what makes concurrent resolves converge on a
    single row.
    """

    __tablename__ = "widget_sessions"
    __table_args__ = (
        Index(
            "uq_widget_sessions_active_visitor",
            "visitor_id",
            "widget_key",
            unique=True,
            sqlite_where=text("is_active = 1"),
            postgresql_where=text("is_active"),
        ),
        Index("ix_widget_sessions_visitor_widget", "visitor_id", "widget_key", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False
    )
    widget_key: Mapped[str] = mapped_column(String(64), nullable=False)
    session_token: Mapped[str] = mapped_column(String(96), unique=True, index=True, nullable=False)

    # Client-generated correlation key, never a credential.
    visitor_id: Mapped[str | None] = mapped_column(String(160))

    conversation_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("conversations.id")
    )

    # Visitor metadata
    device_type: Mapped[DeviceType] = mapped_column(Enum(DeviceType), default=DeviceType.desktop)
    ip_address: Mapped[str | None] = mapped_column(String(45))  # IPv6 max length
    user_agent: Mapped[str | None] = mapped_column(String(512))
    referrer: Mapped[str | None] = mapped_column(String(2048))
    current_url: Mapped[str | None] = mapped_column(String(2048))
    user_data: Mapped[dict | None] = mapped_column(MutableDict.as_mutable(JSON()))

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    last_seen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(UTC))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(UTC))
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    organization = relationship("Organization")
    conversation = relationship("Conversation", foreign_keys=[conversation_id])


class WidgetCustomer(Base):
    """Anonymous (or self-identified) visitor profile, one per organization and visitor id."""

    __tablename__ = "widget_customers"
    __table_args__ = (
        UniqueConstraint("organization_id", "visitor_id", name="uq_widget_customers_org_visitor"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False
    )
    visitor_id: Mapped[str] = mapped_column(String(160), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255))
    full_name: Mapped[str | None] = mapped_column(String(160))
    phone: Mapped[str | None] = mapped_column(String(40))
    metadata_: Mapped[dict | None] = mapped_column("metadata", MutableDict.as_mutable(JSON()))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(UTC))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )
