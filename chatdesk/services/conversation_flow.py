"""Conversation status flow rules.

``waiting -> active`` happens when an agent first speaks; ``closed`` and
``ticket`` are explicit operator actions. Every status write is a
conditional UPDATE so a concurrent writer that already moved the row wins
and the loser becomes a no-op.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Literal

from sqlalchemy import update
from sqlalchemy.orm import Session

from chatdesk.errors import ConversationClosedError, InvalidTransitionError
from chatdesk.logging import get_logger
from chatdesk.models import Conversation, ConversationStatus, SenderType
from chatdesk.services.common import now
from chatdesk.services.observability import STATUS_TRANSITIONS

logger = get_logger(__name__)

_ALLOWED_TRANSITIONS: dict[ConversationStatus, set[ConversationStatus]] = {
    ConversationStatus.waiting: {
        ConversationStatus.waiting,
        ConversationStatus.active,
        ConversationStatus.closed,
        ConversationStatus.ticket,
    },
    ConversationStatus.active: {
        ConversationStatus.active,
        ConversationStatus.closed,
        ConversationStatus.ticket,
    },
    ConversationStatus.ticket: {
        ConversationStatus.ticket,
        ConversationStatus.closed,
    },
    ConversationStatus.closed: set(),
}


@dataclass(frozen=True)
class TransitionCheck:
    allowed: bool
    reason: str | None = None


@dataclass(frozen=True)
class TransitionResult:
    kind: Literal["applied", "unchanged", "lost_race"]
    status: ConversationStatus
    previous: ConversationStatus


def is_transition_allowed(current: ConversationStatus, target: ConversationStatus) -> bool:
    return target in _ALLOWED_TRANSITIONS.get(current, set())


def validate_transition(current: ConversationStatus, target: ConversationStatus) -> TransitionCheck:
    if is_transition_allowed(current, target):
        return TransitionCheck(allowed=True)
    return TransitionCheck(
        allowed=False,
        reason=f"Transition {current.value} -> {target.value} is not allowed",
    )


def _status_of(conversation: Conversation) -> ConversationStatus:
    current = conversation.status or ConversationStatus.waiting
    if not isinstance(current, ConversationStatus):
        current = ConversationStatus(str(current))
    return current


def ensure_accepts_messages(conversation: Conversation) -> None:
    if _status_of(conversation) == ConversationStatus.closed:
        raise ConversationClosedError()


def apply_message_effects(
    db: Session,
    conversation: Conversation,
    sender_type: SenderType,
    sender_id=None,
    at: datetime | None = None,
) -> TransitionResult:
    """Status effects of one accepted message.

    An agent message into a ``waiting`` conversation claims it: status
    becomes ``active``, the sender is assigned and ``assigned_at`` stamped.
    Every other message only touches ``updated_at``. Raises
    ConversationClosedError when the row was closed after it was read; the
    caller rolls back. Does not commit.
    """
    at = at or now()
    previous = _status_of(conversation)

    if sender_type == SenderType.agent and previous == ConversationStatus.waiting:
        result = db.execute(
            update(Conversation)
            .where(Conversation.id == conversation.id)
            .where(Conversation.status == ConversationStatus.waiting)
            .values(
                status=ConversationStatus.active,
                agent_id=sender_id,
                assigned_at=at,
                updated_at=at,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            db.refresh(conversation)
            STATUS_TRANSITIONS.labels(source=previous.value, target=ConversationStatus.active.value).inc()
            logger.info(
                "conversation_picked_up conversation_id=%s agent_id=%s",
                conversation.id,
                sender_id,
            )
            return TransitionResult(kind="applied", status=ConversationStatus.active, previous=previous)

        # Someone else advanced the row between our read and the update.
        _touch_open(db, conversation, at)
        return TransitionResult(kind="lost_race", status=_status_of(conversation), previous=previous)

    _touch_open(db, conversation, at)
    return TransitionResult(kind="unchanged", status=_status_of(conversation), previous=previous)


def _touch_open(db: Session, conversation: Conversation, at: datetime) -> None:
    """Stamp ``updated_at`` unless the row was closed since it was read."""
    result = db.execute(
        update(Conversation)
        .where(Conversation.id == conversation.id)
        .where(Conversation.status != ConversationStatus.closed)
        .values(updated_at=at)
        .execution_options(synchronize_session=False)
    )
    db.refresh(conversation)
    if not result.rowcount:
        raise ConversationClosedError()


def _apply_explicit(db: Session, conversation: Conversation, target: ConversationStatus) -> TransitionResult:
    previous = _status_of(conversation)
    check = validate_transition(previous, target)
    if not check.allowed:
        raise InvalidTransitionError(check.reason or "Transition not allowed")
    if previous == target:
        return TransitionResult(kind="unchanged", status=previous, previous=previous)

    at = now()
    values: dict = {"status": target, "updated_at": at}
    if target == ConversationStatus.closed:
        values["closed_at"] = at

    result = db.execute(
        update(Conversation)
        .where(Conversation.id == conversation.id)
        .where(Conversation.status != ConversationStatus.closed)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    db.refresh(conversation)
    if not result.rowcount:
        logger.info(
            "conversation_transition_skipped conversation_id=%s target=%s status=%s",
            conversation.id,
            target.value,
            _status_of(conversation).value,
        )
        raise InvalidTransitionError(f"Transition {previous.value} -> {target.value} is not allowed")

    STATUS_TRANSITIONS.labels(source=previous.value, target=target.value).inc()
    logger.info(
        "conversation_status_changed conversation_id=%s from=%s to=%s",
        conversation.id,
        previous.value,
        target.value,
    )
    return TransitionResult(kind="applied", status=target, previous=previous)


def close_conversation(db: Session, conversation: Conversation) -> TransitionResult:
    return _apply_explicit(db, conversation, ConversationStatus.closed)


def escalate_to_ticket(db: Session, conversation: Conversation) -> TransitionResult:
    return _apply_explicit(db, conversation, ConversationStatus.ticket)
