import uuid
from datetime import UTC, datetime

from sqlalchemy import Boolean, CheckConstraint, DateTime, ForeignKey, String, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from chatdesk.db import Base


class TypingIndicator(Base):
    """Ephemeral typing flag for one actor in one conversation.

    ``actor_key`` is ``user:<id>`` or ``widget:<id>`` so the uniqueness of
    (conversation, user, widget customer) holds without nullable key members.
    """

    __tablename__ = "typing_indicators"
    __table_args__ = (
        UniqueConstraint("conversation_id", "actor_key", name="uq_typing_indicators_conversation_actor"),
        CheckConstraint(
            "(user_id IS NULL) <> (widget_customer_id IS NULL)",
            name="ck_typing_indicators_single_actor",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    conversation_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("conversations.id"), nullable=False
    )
    user_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id"))
    widget_customer_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("widget_customers.id")
    )
    actor_key: Mapped[str] = mapped_column(String(80), nullable=False)
    is_typing: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(UTC))

    user = relationship("User")
    widget_customer = relationship("WidgetCustomer")
