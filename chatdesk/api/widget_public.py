"""Public API endpoints for the chat widget (session-token authenticated)."""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, Header, Request, Response
from sqlalchemy.orm import Session

from chatdesk.api.deps import SESSION_TOKEN_HEADER, get_widget_session
from chatdesk.db import get_db
from chatdesk.errors import CORS_HEADERS, ConversationAccessError, RateLimitError
from chatdesk.logging import get_logger
from chatdesk.middleware.widget_rate_limit import check_message_rate
from chatdesk.models import SenderType, WidgetSession
from chatdesk.schemas.widget import (
    AckResponse,
    ConversationCreate,
    ConversationResponse,
    DepartmentsResponse,
    MessageResponse,
    MessageSend,
    MessagesResponse,
    TypingResponse,
    TypingUpdate,
    WidgetInitRequest,
    WidgetInitResponse,
)
from chatdesk.services import presence
from chatdesk.services.conversations import conversations, serialize_conversation, serialize_message
from chatdesk.services.sessions import widget_sessions
from chatdesk.services.widget_settings import widget_settings
from chatdesk.websocket import broadcaster

logger = get_logger(__name__)

router = APIRouter(prefix="/widget", tags=["widget-public"])


def _get_client_ip(request: Request) -> str | None:
    """Extract client IP from request headers."""
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        # Take the first IP in the chain
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()

    if request.client:
        return request.client.host

    return None


def _set_cors_headers(response: Response) -> None:
    response.headers.update(CORS_HEADERS)


@router.options("/{path:path}")
def widget_options(path: str):
    response = Response(status_code=204)
    _set_cors_headers(response)
    return response


@router.post("/init", response_model=WidgetInitResponse)
def init_widget(
    payload: WidgetInitRequest,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
):
    """
    Resolve the visitor's widget session.

    Reuses the session named by ``existingSessionToken`` or, failing that,
    the visitor's live session; creates one only when neither exists.
    """
    _set_cors_headers(response)
    user_data = payload.user_data or {}
    current_url = user_data.get("currentUrl") if isinstance(user_data.get("currentUrl"), str) else None

    resolution = widget_sessions.resolve(
        db,
        payload.widget_key,
        payload.visitor_id,
        payload.existing_session_token,
        origin=request.headers.get("origin"),
        ip_address=_get_client_ip(request),
        user_agent=request.headers.get("user-agent"),
        referrer=request.headers.get("referer"),
        current_url=current_url,
        user_data=user_data or None,
    )
    session = resolution.session
    return WidgetInitResponse(
        session_token=session.session_token,
        organization_id=session.organization_id,
        organization_name=resolution.config.organization.name if resolution.config.organization else None,
        conversation_id=session.conversation_id,
        config=widget_settings.get_public_config(resolution.config),
    )


@router.get("/departments", response_model=DepartmentsResponse)
def list_departments(
    response: Response,
    session: WidgetSession = Depends(get_widget_session),
    db: Session = Depends(get_db),
):
    """Active departments with their pre-chat forms, fields ordered by ``order``."""
    _set_cors_headers(response)
    return DepartmentsResponse(departments=widget_settings.list_departments(db, session.organization_id))


@router.post("/conversations", response_model=ConversationResponse)
def create_conversation(
    payload: ConversationCreate,
    response: Response,
    x_session_token: str | None = Header(default=None, alias=SESSION_TOKEN_HEADER),
    db: Session = Depends(get_db),
):
    """
    Start a conversation for the session, or return the one it already has.

    The session token may come in the body on the first call; the header
    wins when both are present.
    """
    _set_cors_headers(response)
    session = widget_sessions.get_active_session(db, x_session_token or payload.session_token)
    result = conversations.open_for_session(db, session, payload)
    return ConversationResponse(conversation=serialize_conversation(result.conversation))


@router.get("/conversations/{conversation_id}", response_model=ConversationResponse)
def get_conversation(
    conversation_id: UUID,
    response: Response,
    session: WidgetSession = Depends(get_widget_session),
    db: Session = Depends(get_db),
):
    _set_cors_headers(response)
    conversation = conversations.get_for_session(db, session, conversation_id)
    return ConversationResponse(conversation=serialize_conversation(conversation))


@router.get("/conversations/{conversation_id}/messages", response_model=MessagesResponse)
def get_messages(
    conversation_id: UUID,
    response: Response,
    session: WidgetSession = Depends(get_widget_session),
    db: Session = Depends(get_db),
):
    """Full history, oldest first."""
    _set_cors_headers(response)
    conversation = conversations.get_for_session(db, session, conversation_id)
    messages = conversations.list_messages(db, conversation)
    return MessagesResponse(messages=[serialize_message(m) for m in messages])


@router.post("/conversations/{conversation_id}/messages", response_model=MessageResponse)
def send_message(
    conversation_id: UUID,
    payload: MessageSend,
    response: Response,
    session: WidgetSession = Depends(get_widget_session),
    db: Session = Depends(get_db),
):
    """Visitor message. Retries with the same ``clientMessageId`` return the stored message."""
    _set_cors_headers(response)
    conversation = conversations.get_for_session(db, session, conversation_id)
    if not conversation.widget_customer_id:
        raise ConversationAccessError()

    allowed, _remaining = check_message_rate(session.id)
    if not allowed:
        raise RateLimitError("Rate limit exceeded")

    widget_sessions.refresh_activity(db, session)
    result = conversations.send_message(
        db,
        conversation,
        payload,
        sender_type=SenderType.customer,
        widget_sender_id=conversation.widget_customer_id,
    )
    return MessageResponse(message=serialize_message(result.message))


@router.get("/conversations/{conversation_id}/typing", response_model=TypingResponse)
def get_typing(
    conversation_id: UUID,
    response: Response,
    session: WidgetSession = Depends(get_widget_session),
    db: Session = Depends(get_db),
):
    """Who else is typing right now."""
    _set_cors_headers(response)
    conversation = conversations.get_for_session(db, session, conversation_id)
    me = presence.TypingActor.widget(conversation.widget_customer_id) if conversation.widget_customer_id else None
    indicators = presence.get_typing(db, conversation.id, excluding=me)
    return TypingResponse(typing_indicators=[presence.serialize_indicator(i) for i in indicators])


@router.post("/conversations/{conversation_id}/typing", response_model=AckResponse)
def set_typing(
    conversation_id: UUID,
    payload: TypingUpdate,
    response: Response,
    session: WidgetSession = Depends(get_widget_session),
    db: Session = Depends(get_db),
):
    _set_cors_headers(response)
    conversation = conversations.get_for_session(db, session, conversation_id)
    if not conversation.widget_customer_id:
        raise ConversationAccessError()
    actor = presence.TypingActor.widget(conversation.widget_customer_id)
    presence.set_typing(db, conversation.id, actor, payload.is_typing)
    broadcaster.broadcast_typing(str(conversation.id), actor.key, payload.is_typing)
    return AckResponse()
