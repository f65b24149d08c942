"""Typing presence for conversation participants."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Literal

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from chatdesk.config import settings
from chatdesk.logging import get_logger
from chatdesk.models import TypingIndicator
from chatdesk.schemas.widget import TypingActorRead
from chatdesk.services.common import coerce_uuid, now

logger = get_logger(__name__)


@dataclass(frozen=True)
class TypingActor:
    """A staff user or a widget customer; exactly one id kind."""

    kind: Literal["user", "widget"]
    id: str

    @property
    def key(self) -> str:
        return f"{self.kind}:{self.id}"

    @classmethod
    def user(cls, user_id) -> TypingActor:
        return cls(kind="user", id=str(user_id))

    @classmethod
    def widget(cls, widget_customer_id) -> TypingActor:
        return cls(kind="widget", id=str(widget_customer_id))


def _find(db: Session, conversation_id, actor_key: str) -> TypingIndicator | None:
    return (
        db.query(TypingIndicator)
        .filter(TypingIndicator.conversation_id == conversation_id)
        .filter(TypingIndicator.actor_key == actor_key)
        .first()
    )


def set_typing(db: Session, conversation_id, actor: TypingActor, is_typing: bool) -> TypingIndicator:
    """Upsert the actor's flag; clearing it is a write, never a delete."""
    conversation_id = coerce_uuid(conversation_id, field="conversation_id")
    at = now()

    indicator = _find(db, conversation_id, actor.key)
    if indicator is None:
        indicator = TypingIndicator(
            conversation_id=conversation_id,
            user_id=coerce_uuid(actor.id) if actor.kind == "user" else None,
            widget_customer_id=coerce_uuid(actor.id) if actor.kind == "widget" else None,
            actor_key=actor.key,
            is_typing=is_typing,
            updated_at=at,
        )
        try:
            with db.begin_nested():
                db.add(indicator)
                db.flush()
        except IntegrityError:
            # A concurrent first write for the same actor landed first.
            indicator = _find(db, conversation_id, actor.key)
            if indicator is None:
                raise
            indicator.is_typing = is_typing
            indicator.updated_at = at
    else:
        indicator.is_typing = is_typing
        indicator.updated_at = at

    db.commit()
    db.refresh(indicator)
    logger.debug(
        "typing_updated conversation_id=%s actor=%s is_typing=%s",
        conversation_id,
        actor.key,
        is_typing,
    )
    return indicator


def get_typing(db: Session, conversation_id, excluding: TypingActor | None = None) -> list[TypingIndicator]:
    """Actors currently typing, minus the caller and anything older than the freshness window."""
    conversation_id = coerce_uuid(conversation_id, field="conversation_id")
    cutoff = now() - timedelta(seconds=settings.typing_freshness_seconds)
    query = (
        db.query(TypingIndicator)
        .filter(TypingIndicator.conversation_id == conversation_id)
        .filter(TypingIndicator.is_typing.is_(True))
        .filter(TypingIndicator.updated_at >= cutoff)
    )
    if excluding is not None:
        query = query.filter(TypingIndicator.actor_key != excluding.key)
    return query.order_by(TypingIndicator.updated_at.asc()).all()


def serialize_indicator(indicator: TypingIndicator) -> TypingActorRead:
    full_name = None
    if indicator.user is not None:
        full_name = indicator.user.full_name
    elif indicator.widget_customer is not None:
        full_name = indicator.widget_customer.full_name
    return TypingActorRead(
        actor_key=indicator.actor_key,
        user_id=indicator.user_id,
        widget_customer_id=indicator.widget_customer_id,
        full_name=full_name,
        is_typing=indicator.is_typing,
        updated_at=indicator.updated_at,
    )
