"""Tests for the conversation service."""

import pytest

from chatdesk.errors import (
    ConversationAccessError,
    ConversationNotFoundError,
    DepartmentRequiredError,
    MessageValidationError,
    PrechatValidationError,
)
from chatdesk.models import Conversation, Message, SenderType, WidgetCustomer, WidgetSession
from chatdesk.schemas.widget import ConversationCreate, CustomerData, MessageSend
from chatdesk.services.conversations import conversations, find_or_create_widget_customer, serialize_message
from chatdesk.services.sessions import widget_sessions


def _session(db, config, visitor_id):
    return widget_sessions.resolve(
        db, config.widget_key, visitor_id, origin="https://example.com", ip_address="198.51.100.8"
    ).session


class TestOpenForSession:
    def test_resumes_open_conversation(self, db_session, widget_session, conversation, open_department):
        again = conversations.open_for_session(
            db_session, widget_session, ConversationCreate(department_id=open_department.id)
        )

        assert again.kind == "resumed"
        assert again.conversation.id == conversation.id
        assert db_session.query(Conversation).count() == 1

    def test_closed_conversation_is_replaced(self, db_session, widget_session, conversation, open_department):
        conversations.close(db_session, conversation)

        fresh = conversations.open_for_session(
            db_session, widget_session, ConversationCreate(department_id=open_department.id)
        )

        assert fresh.kind == "created"
        assert fresh.conversation.id != conversation.id
        db_session.refresh(widget_session)
        assert widget_session.conversation_id == fresh.conversation.id

    def test_prechat_checked_before_writes(self, db_session, widget_session, department):
        with pytest.raises(PrechatValidationError) as exc_info:
            conversations.open_for_session(
                db_session,
                widget_session,
                ConversationCreate(department_id=department.id, pre_chat_data={"email": "a@b.co"}),
            )

        assert exc_info.value.missing_field_ids == ["name"]
        assert db_session.query(Conversation).count() == 0
        assert db_session.query(WidgetCustomer).count() == 0

    def test_inactive_department_rejected(self, db_session, widget_session, open_department):
        open_department.is_active = False
        db_session.commit()

        with pytest.raises(DepartmentRequiredError):
            conversations.open_for_session(
                db_session, widget_session, ConversationCreate(department_id=open_department.id)
            )

    def test_customer_data_fills_profile(self, db_session, widget_session, open_department):
        result = conversations.open_for_session(
            db_session,
            widget_session,
            ConversationCreate(
                department_id=open_department.id,
                customer_data=CustomerData(email="Ada@Example.com", phone="+1 555 0100"),
            ),
        )

        customer = result.conversation.widget_customer
        assert customer.email == "ada@example.com"
        assert customer.phone == "+1 555 0100"

    def test_attach_lost_to_concurrent_create(self, db_session, session_factory, widget_config, open_department):
        """Two starts for one session converge on the conversation attached first."""
        stale_db = session_factory(expire_on_commit=False)
        try:
            stale_session = _session(stale_db, widget_config, "visitor_race")
            stale_db.commit()
            assert stale_session.conversation_id is None

            competitor_db = session_factory()
            try:
                competitor_session = competitor_db.get(WidgetSession, stale_session.id)
                winner = conversations.open_for_session(
                    competitor_db, competitor_session, ConversationCreate(department_id=open_department.id)
                ).conversation
                winner_id = winner.id
            finally:
                competitor_db.close()

            result = conversations.open_for_session(
                stale_db, stale_session, ConversationCreate(department_id=open_department.id)
            )
        finally:
            stale_db.close()

        assert result.kind == "resumed"
        assert result.conversation.id == winner_id
        assert db_session.query(Conversation).count() == 1


class TestAccess:
    def test_same_visitor_new_session_can_read(self, db_session, widget_config, widget_session, conversation):
        widget_session.is_active = False
        db_session.commit()
        replacement = _session(db_session, widget_config, "visitor_fixture")

        assert replacement.id != widget_session.id
        assert conversations.get_for_session(db_session, replacement, conversation.id).id == conversation.id

    def test_other_visitor_forbidden(self, db_session, widget_config, conversation):
        other = _session(db_session, widget_config, "visitor_other")

        with pytest.raises(ConversationAccessError):
            conversations.get_for_session(db_session, other, conversation.id)

    def test_unknown_conversation(self, db_session, widget_session):
        with pytest.raises(ConversationNotFoundError):
            conversations.get_for_session(db_session, widget_session, "00000000-0000-0000-0000-000000000000")


class TestSendMessage:
    def test_content_trimmed(self, db_session, conversation):
        result = conversations.send_message(
            db_session,
            conversation,
            MessageSend(content="  <b>hello</b>\n "),
            sender_type=SenderType.customer,
            widget_sender_id=conversation.widget_customer_id,
        )
        assert result.message.content == "<b>hello</b>"

    def test_media_only_message_allowed(self, db_session, conversation):
        result = conversations.send_message(
            db_session,
            conversation,
            MessageSend(message_type="image", media_url="https://cdn.example.com/a.png", media_type="image/png"),
            sender_type=SenderType.customer,
            widget_sender_id=conversation.widget_customer_id,
        )
        assert result.message.content == ""
        assert serialize_message(result.message).media_url == "https://cdn.example.com/a.png"

    def test_empty_message_rejected(self, db_session, conversation):
        with pytest.raises(MessageValidationError):
            conversations.send_message(
                db_session,
                conversation,
                MessageSend(content=" "),
                sender_type=SenderType.customer,
                widget_sender_id=conversation.widget_customer_id,
            )

    def test_duplicate_client_message_id(self, db_session, conversation):
        payload = MessageSend(content="hello", client_message_id="local_1")
        kwargs = {"sender_type": SenderType.customer, "widget_sender_id": conversation.widget_customer_id}

        first = conversations.send_message(db_session, conversation, payload, **kwargs)
        second = conversations.send_message(db_session, conversation, payload, **kwargs)

        assert first.kind == "created"
        assert second.kind == "duplicate"
        assert second.message.id == first.message.id
        assert db_session.query(Message).count() == 1

    def test_history_oldest_first(self, db_session, conversation, agent):
        kwargs = {"sender_type": SenderType.customer, "widget_sender_id": conversation.widget_customer_id}
        conversations.send_message(db_session, conversation, MessageSend(content="one"), **kwargs)
        conversations.send_message(
            db_session, conversation, MessageSend(content="two"), sender_type=SenderType.agent, sender_id=agent.id
        )
        conversations.send_message(db_session, conversation, MessageSend(content="three"), **kwargs)

        history = conversations.list_messages(db_session, conversation)
        assert [m.content for m in history] == ["one", "two", "three"]


class TestWidgetCustomer:
    def test_contact_never_blanked(self, db_session, widget_session):
        customer = find_or_create_widget_customer(db_session, widget_session, {"email": "a@b.co", "name": "Ada"})
        again = find_or_create_widget_customer(db_session, widget_session, {"email": "", "company": "Acme"})

        assert again.id == customer.id
        assert again.email == "a@b.co"
        assert again.full_name == "Ada"
        assert again.metadata_ == {"company": "Acme"}
