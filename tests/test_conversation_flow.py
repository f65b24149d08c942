"""Tests for conversation status flow rules."""

import pytest
from sqlalchemy import update

from chatdesk.errors import ConversationClosedError, InvalidTransitionError
from chatdesk.models import Conversation, ConversationStatus, Message, SenderType
from chatdesk.schemas.widget import MessageSend
from chatdesk.services import conversation_flow
from chatdesk.services.conversations import conversations

S = ConversationStatus


class TestTransitionTable:
    @pytest.mark.parametrize(
        "current,target",
        [
            (S.waiting, S.active),
            (S.waiting, S.closed),
            (S.waiting, S.ticket),
            (S.active, S.closed),
            (S.active, S.ticket),
            (S.ticket, S.closed),
            (S.active, S.active),
        ],
    )
    def test_allowed(self, current, target):
        assert conversation_flow.is_transition_allowed(current, target) is True

    @pytest.mark.parametrize(
        "current,target",
        [
            (S.active, S.waiting),
            (S.closed, S.active),
            (S.closed, S.waiting),
            (S.closed, S.ticket),
            (S.closed, S.closed),
            (S.ticket, S.active),
            (S.ticket, S.waiting),
        ],
    )
    def test_rejected(self, current, target):
        check = conversation_flow.validate_transition(current, target)
        assert check.allowed is False
        assert current.value in check.reason
        assert target.value in check.reason


class TestMessageEffects:
    """Status effects of accepted messages."""

    def _send(self, db, conversation, sender_type, sender_id=None, content="hello"):
        kwargs = {"sender_type": sender_type}
        if sender_type == SenderType.agent:
            kwargs["sender_id"] = sender_id
        else:
            kwargs["widget_sender_id"] = conversation.widget_customer_id
        return conversations.send_message(db, conversation, MessageSend(content=content), **kwargs)

    def test_new_conversation_is_waiting(self, conversation):
        assert conversation.status == S.waiting
        assert conversation.agent_id is None
        assert conversation.assigned_at is None

    def test_customer_message_keeps_waiting(self, db_session, conversation):
        result = self._send(db_session, conversation, SenderType.customer)

        assert result.transition.kind == "unchanged"
        assert conversation.status == S.waiting

    def test_first_agent_message_claims_conversation(self, db_session, conversation, agent):
        self._send(db_session, conversation, SenderType.customer)
        result = self._send(db_session, conversation, SenderType.agent, agent.id, "Hi, Alice here")

        assert result.transition.kind == "applied"
        assert result.transition.previous == S.waiting
        assert conversation.status == S.active
        assert conversation.agent_id == agent.id
        assert conversation.assigned_at is not None

    def test_customer_message_keeps_active(self, db_session, conversation, agent):
        self._send(db_session, conversation, SenderType.agent, agent.id)
        result = self._send(db_session, conversation, SenderType.customer, content="thanks")

        assert result.transition.kind == "unchanged"
        assert conversation.status == S.active

    def test_later_agent_message_does_not_reassign(self, db_session, conversation, agent, second_agent):
        self._send(db_session, conversation, SenderType.agent, agent.id)
        result = self._send(db_session, conversation, SenderType.agent, second_agent.id)

        assert result.transition.kind == "unchanged"
        assert conversation.agent_id == agent.id

    def test_stale_pickup_loses_to_concurrent_claim(self, db_session, conversation, agent, second_agent):
        """The second claimer sees the row already active and leaves the assignment alone."""
        db_session.execute(
            update(Conversation)
            .where(Conversation.id == conversation.id)
            .values(status=S.active, agent_id=second_agent.id)
            .execution_options(synchronize_session=False)
        )
        assert conversation.status == S.waiting  # stale in-memory copy

        result = conversation_flow.apply_message_effects(
            db_session, conversation, SenderType.agent, sender_id=agent.id
        )

        assert result.kind == "lost_race"
        assert conversation.status == S.active
        assert conversation.agent_id == second_agent.id

    def test_close_landing_before_insert_rejects_message(self, db_session, conversation):
        """A close committed after the closed-check read still keeps the message out."""
        db_session.execute(
            update(Conversation)
            .where(Conversation.id == conversation.id)
            .values(status=S.closed)
            .execution_options(synchronize_session=False)
        )
        assert conversation.status == S.waiting  # stale in-memory copy

        with pytest.raises(ConversationClosedError):
            self._send(db_session, conversation, SenderType.customer, content="too late")

        assert db_session.query(Message).filter(Message.conversation_id == conversation.id).count() == 0

    def test_updated_at_advances(self, db_session, conversation):
        before = conversation.updated_at
        self._send(db_session, conversation, SenderType.customer)
        assert conversation.updated_at >= before


class TestExplicitTransitions:
    def test_close_stamps_closed_at(self, db_session, conversation):
        result = conversations.close(db_session, conversation)

        assert result.kind == "applied"
        assert conversation.status == S.closed
        assert conversation.closed_at is not None

    def test_close_twice_rejected(self, db_session, conversation):
        conversations.close(db_session, conversation)
        with pytest.raises(InvalidTransitionError):
            conversations.close(db_session, conversation)

    def test_closed_conversation_rejects_messages(self, db_session, conversation):
        conversations.close(db_session, conversation)
        with pytest.raises(ConversationClosedError):
            conversations.send_message(
                db_session,
                conversation,
                MessageSend(content="anyone?"),
                sender_type=SenderType.customer,
                widget_sender_id=conversation.widget_customer_id,
            )

    def test_escalate_active_to_ticket(self, db_session, conversation, agent):
        conversations.send_message(
            db_session, conversation, MessageSend(content="on it"), sender_type=SenderType.agent, sender_id=agent.id
        )
        result = conversations.escalate(db_session, conversation)

        assert result.kind == "applied"
        assert result.previous == S.active
        assert conversation.status == S.ticket

    def test_ticket_still_accepts_messages_and_can_close(self, db_session, conversation):
        conversations.escalate(db_session, conversation)
        conversations.send_message(
            db_session,
            conversation,
            MessageSend(content="any update?"),
            sender_type=SenderType.customer,
            widget_sender_id=conversation.widget_customer_id,
        )
        assert conversation.status == S.ticket

        conversations.close(db_session, conversation)
        assert conversation.status == S.closed

    def test_escalate_closed_rejected(self, db_session, conversation):
        conversations.close(db_session, conversation)
        with pytest.raises(InvalidTransitionError):
            conversations.escalate(db_session, conversation)

    def test_close_loses_to_concurrent_close(self, db_session, conversation):
        """A stale copy cannot close a row someone else already closed."""
        db_session.execute(
            update(Conversation)
            .where(Conversation.id == conversation.id)
            .values(status=S.closed)
            .execution_options(synchronize_session=False)
        )
        with pytest.raises(InvalidTransitionError):
            conversation_flow.close_conversation(db_session, conversation)
        assert conversation.status == S.closed
