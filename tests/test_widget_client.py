"""End-to-end tests for the widget client against the ASGI app."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from chatdesk.client.api import WidgetApiClient, WidgetTransportError
from chatdesk.client.events import WidgetEvent
from chatdesk.client.feed import ConversationFeed
from chatdesk.client.identity import IdentityStore, MemoryStorage
from chatdesk.client.widget import ChatWidget
from chatdesk.models import Conversation
from chatdesk.services.conversations import conversations


class IdleSocket:
    """Push socket that stays open and silent until closed."""

    def __init__(self):
        self.sent = []
        self._closed = asyncio.Event()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    async def send(self, data):
        self.sent.append(data)

    async def close(self):
        self._closed.set()

    def __aiter__(self):
        return self

    async def __anext__(self):
        await self._closed.wait()
        raise StopAsyncIteration


def _idle_feed(*args, **kwargs):
    return ConversationFeed(*args, connect=lambda url: IdleSocket(), backoff_initial=0, **kwargs)


@pytest.fixture
def open_widget_config(db_session, widget_config):
    """Widget without an origin allow-list; the client sends no Origin header."""
    widget_config.allowed_domains = []
    db_session.commit()
    return widget_config


@pytest.fixture
def identity():
    return IdentityStore([MemoryStorage(), MemoryStorage()])


@pytest.fixture
def make_widget(app, open_widget_config, identity):
    def _make(widget_key=None):
        return ChatWidget(
            widget_key or open_widget_config.widget_key,
            "http://testserver",
            identity,
            api=WidgetApiClient("http://testserver", transport=httpx.ASGITransport(app=app)),
            feed_factory=_idle_feed,
        )

    return _make


def _record(widget, *events):
    seen = []
    for event in events:
        widget.on(event, lambda data, event=event: seen.append((event, data)))
    return seen


class TestInit:
    async def test_ready_with_departments(self, make_widget, identity, open_widget_config, department, open_department):
        widget = make_widget()
        seen = _record(widget, WidgetEvent.READY, WidgetEvent.ERROR)

        assert await widget.init() is True

        assert [event for event, _ in seen] == [WidgetEvent.READY]
        assert identity.get_session_token(open_widget_config.widget_key) == widget.token
        assert [d["name"] for d in widget.departments] == ["General", "Sales"]
        sales = widget.departments[1]
        assert [f["id"] for f in sales["preChatForm"]] == ["email", "name", "topic"]
        assert widget.config["widgetTitle"] == "Talk to Acme"
        assert widget.auto_open_delay is None
        await widget.destroy()

    async def test_unknown_widget_key_emits_error(self, make_widget, open_widget_config):
        widget = make_widget(widget_key="wk_missing")
        seen = _record(widget, WidgetEvent.READY, WidgetEvent.ERROR)

        assert await widget.init() is False

        assert len(seen) == 1
        event, error = seen[0]
        assert event == WidgetEvent.ERROR
        assert isinstance(error, WidgetTransportError)
        assert error.status_code == 404
        assert error.code == "widget_unavailable"
        await widget.destroy()

    async def test_failed_resume_stops_boot(self, identity):
        """An attached conversation that cannot be loaded fails init instead of starting fresh."""
        api = MagicMock()
        api.init = AsyncMock(return_value={"sessionToken": "tok-1", "conversationId": "conv-1", "config": {}})
        api.get_conversation = AsyncMock(
            side_effect=WidgetTransportError("Conversation not found", status_code=404, code="conversation_not_found")
        )
        api.list_departments = AsyncMock(return_value=[])
        api.close = AsyncMock()
        widget = ChatWidget("wk_test", "http://testserver", identity, api=api, feed_factory=_idle_feed)
        seen = _record(widget, WidgetEvent.READY, WidgetEvent.ERROR)

        assert await widget.init() is False

        assert [event for event, _ in seen] == [WidgetEvent.ERROR]
        assert seen[0][1].status_code == 404
        assert widget.conversation is None
        api.list_departments.assert_not_awaited()
        await widget.destroy()


class TestConversationStart:
    async def test_prechat_checked_before_request(self, make_widget, db_session, department):
        widget = make_widget()
        await widget.init()

        result = await widget.start_conversation(str(department.id), {"Email address": "ada@example.com"})

        assert result is None
        assert widget.prechat_errors == ["email", "name"]
        assert db_session.query(Conversation).count() == 0
        await widget.destroy()

    async def test_start_send_and_resume(self, make_widget, identity, db_session, department):
        widget = make_widget()
        seen = _record(widget, WidgetEvent.CONVERSATION_STARTED, WidgetEvent.MESSAGE_SENT)
        await widget.init()

        conversation = await widget.start_conversation(
            str(department.id),
            {"email": "Ada@Example.com", "name": "Ada"},
        )
        assert conversation["status"] == "waiting"
        assert widget.feed is not None and widget.feed.attached

        message = await widget.send("Where is my order?")
        assert message["content"] == "Where is my order?"
        entries = widget.log.entries()
        assert [e.key for e in entries] == [message["id"]]
        assert entries[0].state == "confirmed"
        assert [event for event, _ in seen] == [WidgetEvent.CONVERSATION_STARTED, WidgetEvent.MESSAGE_SENT]
        await widget.destroy()

        # Reload with the kept token: the conversation and its history come back.
        reloaded = make_widget()
        await reloaded.init()
        assert reloaded.conversation["id"] == conversation["id"]
        assert reloaded.departments == []
        assert [m["content"] for m in reloaded.log.messages()] == ["Where is my order?"]
        await reloaded.destroy()

        # Token lost: the visitor id still finds the same session and conversation.
        identity.clear_session_token(widget.widget_key)
        recovered = make_widget()
        await recovered.init()
        assert recovered.session["conversationId"] == conversation["id"]
        await recovered.destroy()

    async def test_failed_send_restores_composer(self, make_widget, db_session, open_department):
        widget = make_widget()
        errors = _record(widget, WidgetEvent.ERROR)
        await widget.init()
        conversation = await widget.start_conversation(str(open_department.id))

        db_session.expire_all()
        conversations.close(db_session, conversations.get(db_session, conversation["id"]))

        widget.composer = "Hello?"
        task = widget.send()
        assert widget.composer == ""
        assert len(widget.log.pending()) == 1

        assert await task is None
        assert widget.composer == "Hello?"
        assert len(widget.log) == 0
        assert errors[0][1].status_code == 409
        await widget.destroy()

    async def test_explicit_send_keeps_draft(self, make_widget, open_department):
        widget = make_widget()
        await widget.init()
        await widget.start_conversation(str(open_department.id))
        widget.composer = "half-typed"

        message = await widget.send("Quick question")

        assert message["content"] == "Quick question"
        assert widget.composer == "half-typed"
        await widget.destroy()

    async def test_blank_send_ignored(self, make_widget, open_department):
        widget = make_widget()
        await widget.init()
        await widget.start_conversation(str(open_department.id))

        assert widget.send("   ") is None
        await widget.destroy()


class TestHostApi:
    async def test_open_close_toggle_identify_track(self, make_widget):
        widget = make_widget()
        seen = _record(
            widget,
            WidgetEvent.OPENED,
            WidgetEvent.CLOSED,
            WidgetEvent.IDENTIFIED,
            WidgetEvent.TRACKED,
            WidgetEvent.DESTROYED,
        )

        widget.open()
        widget.open()
        widget.toggle()
        widget.identify({"email": "ada@example.com"})
        widget.track("pricing_viewed", {"plan": "pro"})
        await widget.destroy()

        assert [event for event, _ in seen] == [
            WidgetEvent.OPENED,
            WidgetEvent.CLOSED,
            WidgetEvent.IDENTIFIED,
            WidgetEvent.TRACKED,
            WidgetEvent.DESTROYED,
        ]
        assert widget.user_data == {"email": "ada@example.com"}
        assert seen[3][1] == {"eventName": "pricing_viewed", "eventData": {"plan": "pro"}}
