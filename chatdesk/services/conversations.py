"""Conversation and message service for widget sessions and operators."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from chatdesk.config import settings
from chatdesk.errors import (
    ConversationAccessError,
    ConversationClosedError,
    ConversationNotFoundError,
    DepartmentRequiredError,
    MessageValidationError,
    PrechatValidationError,
)
from chatdesk.logging import get_logger
from chatdesk.models import (
    Conversation,
    ConversationStatus,
    Department,
    Message,
    MessageStatus,
    MessageType,
    SenderType,
    User,
    WidgetCustomer,
    WidgetSession,
    WidgetSettings,
)
from chatdesk.schemas.widget import (
    ConversationCreate,
    ConversationRead,
    MessageRead,
    MessageSend,
    SenderRead,
)
from chatdesk.services import conversation_flow, prechat
from chatdesk.services.common import coerce_uuid, now
from chatdesk.services.observability import CONVERSATIONS_OPENED, MESSAGES_ACCEPTED
from chatdesk.websocket import broadcaster

logger = get_logger(__name__)


@dataclass(frozen=True)
class ConversationOpenResult:
    kind: Literal["created", "resumed"]
    conversation: Conversation


@dataclass(frozen=True)
class MessageSendResult:
    kind: Literal["created", "duplicate"]
    message: Message
    transition: conversation_flow.TransitionResult | None = None


def _sanitize_message_body(body: str | None) -> str:
    """Strip surrounding whitespace and cap the length."""
    return (body or "").strip()[: settings.message_max_length]


# --------------------------------------------------------------------------
# Serialization
# --------------------------------------------------------------------------


def serialize_conversation(conversation: Conversation) -> ConversationRead:
    return ConversationRead(
        id=conversation.id,
        organization_id=conversation.organization_id,
        department_id=conversation.department_id,
        customer_id=conversation.customer_id,
        widget_customer_id=conversation.widget_customer_id,
        agent_id=conversation.agent_id,
        status=conversation.status.value,
        pre_chat_data=dict(conversation.pre_chat_data or {}),
        created_at=conversation.created_at,
        updated_at=conversation.updated_at,
        assigned_at=conversation.assigned_at,
        closed_at=conversation.closed_at,
    )


def _sender_of(message: Message) -> SenderRead | None:
    if message.sender is not None:
        return SenderRead(
            id=message.sender.id,
            full_name=message.sender.full_name,
            avatar_url=message.sender.avatar_url,
            role=message.sender.role.value,
        )
    if message.widget_sender is not None:
        return SenderRead(
            id=message.widget_sender.id,
            full_name=message.widget_sender.full_name,
            role="customer",
        )
    return None


def serialize_message(message: Message) -> MessageRead:
    return MessageRead(
        id=message.id,
        conversation_id=message.conversation_id,
        sender_id=message.sender_id,
        widget_sender_id=message.widget_sender_id,
        sender_type=message.sender_type.value,
        content=message.content or "",
        message_type=message.message_type.value if message.message_type else MessageType.text.value,
        media_url=message.media_url,
        media_type=message.media_type,
        media_size=message.media_size,
        media_name=message.media_name,
        status=message.status.value if message.status else MessageStatus.sent.value,
        client_message_id=message.client_message_id,
        created_at=message.created_at,
        sender=_sender_of(message),
    )


# --------------------------------------------------------------------------
# Widget customers
# --------------------------------------------------------------------------


def _visitor_key(session: WidgetSession) -> str:
    return session.visitor_id or f"session:{session.id}"


def find_or_create_widget_customer(
    db: Session,
    session: WidgetSession,
    contact: dict[str, str] | None = None,
) -> WidgetCustomer:
    """Visitor profile keyed by (organization, visitor id); contact fields fill in, never blank out."""
    visitor_key = _visitor_key(session)

    def _lookup() -> WidgetCustomer | None:
        return (
            db.query(WidgetCustomer)
            .filter(WidgetCustomer.organization_id == session.organization_id)
            .filter(WidgetCustomer.visitor_id == visitor_key)
            .first()
        )

    customer = _lookup()
    if customer is None:
        customer = WidgetCustomer(organization_id=session.organization_id, visitor_id=visitor_key)
        try:
            with db.begin_nested():
                db.add(customer)
                db.flush()
            logger.info("widget_customer_created customer_id=%s visitor_id=%s", customer.id, visitor_key)
        except IntegrityError:
            customer = _lookup()
            if customer is None:
                raise

    contact = contact or {}
    if contact.get("email"):
        customer.email = contact["email"].strip().lower()[:255]
    if contact.get("name"):
        customer.full_name = contact["name"].strip()[:160]
    if contact.get("phone"):
        customer.phone = contact["phone"].strip()[:40]
    extra = {k: v for k, v in contact.items() if k not in ("email", "name", "phone") and v is not None}
    if extra:
        metadata = dict(customer.metadata_ or {})
        metadata.update(extra)
        customer.metadata_ = metadata
    db.flush()
    return customer


# --------------------------------------------------------------------------
# Conversations
# --------------------------------------------------------------------------


class ConversationManager:
    """Create, resume, read and write conversations."""

    @staticmethod
    def get(db: Session, conversation_id) -> Conversation:
        conversation = db.get(Conversation, coerce_uuid(conversation_id, field="conversation_id"))
        if not conversation:
            raise ConversationNotFoundError()
        return conversation

    @staticmethod
    def open_for_session(db: Session, session: WidgetSession, payload: ConversationCreate) -> ConversationOpenResult:
        """Return the session's open conversation, or create and attach a new one.

        A session keeps one conversation until it is closed; only then may a
        new one replace it. Pre-chat validation runs before anything is
        written.
        """
        previous_id = session.conversation_id
        if previous_id:
            existing = db.get(Conversation, previous_id)
            if existing and existing.status != ConversationStatus.closed:
                CONVERSATIONS_OPENED.labels(result="resumed").inc()
                logger.info(
                    "widget_conversation_resumed conversation_id=%s session_id=%s",
                    existing.id,
                    session.id,
                )
                return ConversationOpenResult(kind="resumed", conversation=existing)

        config = (
            db.query(WidgetSettings).filter(WidgetSettings.widget_key == session.widget_key).first()
        )
        department_id = payload.department_id or (config.default_department_id if config else None)
        if not department_id:
            raise DepartmentRequiredError()

        department = db.get(Department, department_id)
        if (
            not department
            or department.organization_id != session.organization_id
            or not department.is_active
        ):
            raise DepartmentRequiredError("Department not found")

        pre_chat_data = dict(payload.pre_chat_data or {})
        check = prechat.validate(department.pre_chat_form, pre_chat_data)
        if not check.ok:
            logger.info(
                "widget_prechat_rejected session_id=%s missing=%s",
                session.id,
                ",".join(check.missing_field_ids),
            )
            raise PrechatValidationError(check.missing_field_ids)

        contact = prechat.contact_details(department.pre_chat_form, pre_chat_data)
        if payload.customer_data is not None:
            provided = payload.customer_data.model_dump(exclude_none=True)
            contact.update({k: v for k, v in provided.items() if isinstance(v, str) and v.strip()})

        customer = find_or_create_widget_customer(db, session, contact)

        at = now()
        conversation = Conversation(
            organization_id=session.organization_id,
            department_id=department.id,
            widget_customer_id=customer.id,
            status=ConversationStatus.waiting,
            pre_chat_data=pre_chat_data,
            created_at=at,
            updated_at=at,
        )
        db.add(conversation)
        db.flush()

        # Attach only if nobody attached a different conversation meanwhile.
        attach = (
            update(WidgetSession)
            .where(WidgetSession.id == session.id)
            .values(conversation_id=conversation.id)
            .execution_options(synchronize_session=False)
        )
        if previous_id:
            attach = attach.where(
                or_(WidgetSession.conversation_id.is_(None), WidgetSession.conversation_id == previous_id)
            )
        else:
            attach = attach.where(WidgetSession.conversation_id.is_(None))
        attached = db.execute(attach).rowcount

        if not attached:
            db.rollback()
            db.refresh(session)
            winner = db.get(Conversation, session.conversation_id) if session.conversation_id else None
            if winner is None:
                raise ConversationNotFoundError()
            CONVERSATIONS_OPENED.labels(result="resumed").inc()
            logger.info(
                "widget_conversation_attach_lost conversation_id=%s session_id=%s",
                winner.id,
                session.id,
            )
            return ConversationOpenResult(kind="resumed", conversation=winner)

        db.commit()
        db.refresh(conversation)
        db.refresh(session)
        CONVERSATIONS_OPENED.labels(result="created").inc()
        logger.info(
            "widget_conversation_created conversation_id=%s session_id=%s department_id=%s",
            conversation.id,
            session.id,
            department.id,
        )
        broadcaster.subscribe_widget_to_conversation(str(session.id), str(conversation.id))
        return ConversationOpenResult(kind="created", conversation=conversation)

    @staticmethod
    def get_for_session(db: Session, session: WidgetSession, conversation_id) -> Conversation:
        """Conversation the session may see: its own, or one owned by the same visitor."""
        conversation = ConversationManager.get(db, conversation_id)
        if conversation.organization_id != session.organization_id:
            raise ConversationAccessError()
        if session.conversation_id == conversation.id:
            return conversation
        owner = conversation.widget_customer
        if owner is not None and session.visitor_id and owner.visitor_id == session.visitor_id:
            return conversation
        logger.info(
            "widget_conversation_forbidden conversation_id=%s session_id=%s",
            conversation.id,
            session.id,
        )
        raise ConversationAccessError()

    @staticmethod
    def get_for_staff(db: Session, user: User, conversation_id) -> Conversation:
        conversation = ConversationManager.get(db, conversation_id)
        if conversation.organization_id != user.organization_id:
            raise ConversationAccessError()
        return conversation

    @staticmethod
    def list_messages(db: Session, conversation: Conversation) -> list[Message]:
        return (
            db.query(Message)
            .filter(Message.conversation_id == conversation.id)
            .order_by(Message.created_at.asc(), Message.id.asc())
            .all()
        )

    @staticmethod
    def send_message(
        db: Session,
        conversation: Conversation,
        payload: MessageSend,
        *,
        sender_type: SenderType,
        sender_id=None,
        widget_sender_id=None,
    ) -> MessageSendResult:
        """Persist one message, apply its status effects and push it.

        Retries carrying an already-stored ``client_message_id`` return the
        stored row without side effects.
        """
        conversation_flow.ensure_accepts_messages(conversation)

        content = _sanitize_message_body(payload.content)
        if not content and not payload.media_url:
            raise MessageValidationError("Message content or media is required")

        client_message_id = payload.client_message_id or None
        if client_message_id:
            existing = ConversationManager._find_by_client_id(db, conversation.id, client_message_id)
            if existing is not None:
                MESSAGES_ACCEPTED.labels(sender_type=sender_type.value, status="duplicate").inc()
                return MessageSendResult(kind="duplicate", message=existing)

        at = now()
        message = Message(
            conversation_id=conversation.id,
            sender_id=sender_id,
            widget_sender_id=widget_sender_id,
            sender_type=sender_type,
            content=content,
            message_type=MessageType(payload.message_type),
            media_url=payload.media_url,
            media_type=payload.media_type,
            media_size=payload.media_size,
            media_name=payload.media_name,
            status=MessageStatus.sent,
            client_message_id=client_message_id,
            created_at=at,
        )
        try:
            with db.begin_nested():
                db.add(message)
                db.flush()
        except IntegrityError:
            existing = (
                ConversationManager._find_by_client_id(db, conversation.id, client_message_id)
                if client_message_id
                else None
            )
            if existing is None:
                raise
            MESSAGES_ACCEPTED.labels(sender_type=sender_type.value, status="duplicate").inc()
            return MessageSendResult(kind="duplicate", message=existing)

        try:
            transition = conversation_flow.apply_message_effects(
                db, conversation, sender_type, sender_id=sender_id, at=at
            )
        except ConversationClosedError:
            db.rollback()
            logger.info("conversation_message_rejected_closed conversation_id=%s", conversation.id)
            raise
        db.commit()
        db.refresh(message)
        db.refresh(conversation)

        MESSAGES_ACCEPTED.labels(sender_type=sender_type.value, status="created").inc()
        logger.info(
            "conversation_message_persisted message_id=%s conversation_id=%s sender_type=%s",
            message.id,
            conversation.id,
            sender_type.value,
        )

        broadcaster.broadcast_new_message(
            serialize_message(message).model_dump(mode="json", by_alias=True),
            str(conversation.id),
        )
        if transition.kind == "applied":
            broadcaster.broadcast_conversation_updated(conversation)
        return MessageSendResult(kind="created", message=message, transition=transition)

    @staticmethod
    def _find_by_client_id(db: Session, conversation_id, client_message_id: str) -> Message | None:
        return (
            db.query(Message)
            .filter(Message.conversation_id == conversation_id)
            .filter(Message.client_message_id == client_message_id)
            .first()
        )

    @staticmethod
    def close(db: Session, conversation: Conversation) -> conversation_flow.TransitionResult:
        result = conversation_flow.close_conversation(db, conversation)
        if result.kind == "applied":
            broadcaster.broadcast_conversation_updated(conversation)
        return result

    @staticmethod
    def escalate(db: Session, conversation: Conversation) -> conversation_flow.TransitionResult:
        result = conversation_flow.escalate_to_ticket(db, conversation)
        if result.kind == "applied":
            broadcaster.broadcast_conversation_updated(conversation)
        return result


# Singleton instance
conversations = ConversationManager()
