"""Operator endpoints: reply, close, escalate and typing for staff users."""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from chatdesk.api.deps import get_current_staff
from chatdesk.db import get_db
from chatdesk.models import SenderType, User
from chatdesk.schemas.widget import (
    AckResponse,
    ConversationResponse,
    MessageResponse,
    MessageSend,
    MessagesResponse,
    TypingResponse,
    TypingUpdate,
)
from chatdesk.services import presence
from chatdesk.services.conversations import conversations, serialize_conversation, serialize_message
from chatdesk.websocket import broadcaster

router = APIRouter(prefix="/conversations", tags=["conversations"])


@router.get("/{conversation_id}/messages", response_model=MessagesResponse)
def list_messages(
    conversation_id: UUID,
    user: User = Depends(get_current_staff),
    db: Session = Depends(get_db),
):
    conversation = conversations.get_for_staff(db, user, conversation_id)
    messages = conversations.list_messages(db, conversation)
    return MessagesResponse(messages=[serialize_message(m) for m in messages])


@router.post("/{conversation_id}/messages", response_model=MessageResponse)
def send_message(
    conversation_id: UUID,
    payload: MessageSend,
    user: User = Depends(get_current_staff),
    db: Session = Depends(get_db),
):
    """Agent reply. The first one into a waiting conversation claims it."""
    conversation = conversations.get_for_staff(db, user, conversation_id)
    result = conversations.send_message(
        db,
        conversation,
        payload,
        sender_type=SenderType.agent,
        sender_id=user.id,
    )
    return MessageResponse(message=serialize_message(result.message))


@router.post("/{conversation_id}/close", response_model=ConversationResponse)
def close_conversation(
    conversation_id: UUID,
    user: User = Depends(get_current_staff),
    db: Session = Depends(get_db),
):
    conversation = conversations.get_for_staff(db, user, conversation_id)
    conversations.close(db, conversation)
    return ConversationResponse(conversation=serialize_conversation(conversation))


@router.post("/{conversation_id}/ticket", response_model=ConversationResponse)
def escalate_conversation(
    conversation_id: UUID,
    user: User = Depends(get_current_staff),
    db: Session = Depends(get_db),
):
    conversation = conversations.get_for_staff(db, user, conversation_id)
    conversations.escalate(db, conversation)
    return ConversationResponse(conversation=serialize_conversation(conversation))


@router.get("/{conversation_id}/typing", response_model=TypingResponse)
def get_typing(
    conversation_id: UUID,
    user: User = Depends(get_current_staff),
    db: Session = Depends(get_db),
):
    conversation = conversations.get_for_staff(db, user, conversation_id)
    indicators = presence.get_typing(db, conversation.id, excluding=presence.TypingActor.user(user.id))
    return TypingResponse(typing_indicators=[presence.serialize_indicator(i) for i in indicators])


@router.post("/{conversation_id}/typing", response_model=AckResponse)
def set_typing(
    conversation_id: UUID,
    payload: TypingUpdate,
    user: User = Depends(get_current_staff),
    db: Session = Depends(get_db),
):
    conversation = conversations.get_for_staff(db, user, conversation_id)
    actor = presence.TypingActor.user(user.id)
    presence.set_typing(db, conversation.id, actor, payload.is_typing)
    broadcaster.broadcast_typing(str(conversation.id), actor.key, payload.is_typing, user.full_name)
    return AckResponse()
