"""Tests for the widget push channel."""

import pytest
from starlette.websockets import WebSocketDisconnect

from chatdesk.websocket.events import EventType, InboundMessage, InboundMessageType, WebSocketEvent
from chatdesk.websocket.manager import get_connection_manager


def _receive_until(ws, event, limit=10):
    for _ in range(limit):
        payload = ws.receive_json()
        if payload["event"] == event:
            return payload
    raise AssertionError(f"no {event} event received")


class TestWidgetWebSocketAuth:
    def test_missing_token_closes_4001(self, client):
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect("/ws/widget") as ws:
                ws.receive_json()
        assert exc_info.value.code == 4001

    def test_invalid_token_closes_4001(self, client):
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect("/ws/widget?token=nope") as ws:
                ws.receive_json()
        assert exc_info.value.code == 4001

    def test_disabled_widget_closes_4003(self, client, db_session, widget_config, widget_session):
        token = widget_session.session_token
        widget_config.enabled = False
        db_session.commit()

        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect(f"/ws/widget?token={token}") as ws:
                ws.receive_json()
        assert exc_info.value.code == 4003


class TestWidgetWebSocketEvents:
    def test_ack_and_ping(self, client, widget_session):
        with client.websocket_connect(f"/ws/widget?token={widget_session.session_token}") as ws:
            ack = ws.receive_json()
            assert ack["event"] == "connection_ack"
            assert ack["data"]["status"] == "connected"

            ws.send_json({"type": "ping"})
            assert _receive_until(ws, "heartbeat")["data"] == {"status": "ok"}

    def test_subscribe_own_conversation(self, client, widget_session, conversation):
        with client.websocket_connect(f"/ws/widget?token={widget_session.session_token}") as ws:
            ws.receive_json()
            ws.send_json({"type": "subscribe", "conversation_id": str(conversation.id)})

            ack = _receive_until(ws, "connection_ack")
            assert ack["data"]["subscribedTo"] == str(conversation.id)

    def test_subscribe_foreign_conversation_rejected(self, client, widget_session, conversation, widget_config):
        intruder = client.post(
            "/api/widget/init",
            json={"widgetKey": widget_config.widget_key, "visitorId": "visitor_intruder"},
            headers={"Origin": "https://example.com"},
        ).json()["sessionToken"]

        with client.websocket_connect(f"/ws/widget?token={intruder}") as ws:
            ws.receive_json()
            ws.send_json({"type": "subscribe", "conversation_id": str(conversation.id)})

            ack = _receive_until(ws, "connection_ack")
            assert ack["data"]["subscribedTo"] is None
            assert ack["data"]["error"] == "forbidden"

    def test_invalid_frame_is_ignored(self, client, widget_session):
        with client.websocket_connect(f"/ws/widget?token={widget_session.session_token}") as ws:
            ws.receive_json()
            ws.send_text("not json")
            ws.send_json({"type": "ping"})
            assert _receive_until(ws, "heartbeat")["event"] == "heartbeat"

    def test_agent_reply_pushed_to_visitor(self, client, widget_session, conversation, agent, agent_headers):
        with client.websocket_connect(f"/ws/widget?token={widget_session.session_token}") as ws:
            ws.receive_json()
            ws.send_json({"type": "subscribe", "conversation_id": str(conversation.id)})
            _receive_until(ws, "connection_ack")

            reply = client.post(
                f"/api/conversations/{conversation.id}/messages",
                json={"content": "Hi, how can I help?"},
                headers=agent_headers,
            ).json()["message"]

            received = {}
            while len(received) < 2:
                payload = ws.receive_json()
                if payload["event"] in ("message_new", "conversation_updated"):
                    received[payload["event"]] = payload["data"]

            pushed = received["message_new"]
            assert pushed["id"] == reply["id"]
            assert pushed["conversationId"] == str(conversation.id)
            assert pushed["senderType"] == "agent"
            assert pushed["content"] == "Hi, how can I help?"
            assert received["conversation_updated"]["status"] == "active"
            assert received["conversation_updated"]["agentId"] == str(agent.id)

    def test_conversation_created_pushed_to_session(self, client, widget_session, open_department):
        token = widget_session.session_token
        with client.websocket_connect(f"/ws/widget?token={token}") as ws:
            ws.receive_json()
            created = client.post(
                "/api/widget/conversations",
                json={"departmentId": str(open_department.id)},
                headers={"X-Session-Token": token},
            ).json()["conversation"]

            pushed = _receive_until(ws, "conversation_created")
            assert pushed["data"] == {"conversationId": created["id"]}

    def test_typing_frame_broadcast(self, client, widget_session, conversation):
        with client.websocket_connect(f"/ws/widget?token={widget_session.session_token}") as ws:
            ws.receive_json()
            ws.send_json({"type": "typing", "is_typing": True})

            typing = _receive_until(ws, "user_typing")
            assert typing["data"]["isTyping"] is True
            assert typing["data"]["actorKey"] == f"widget:{conversation.widget_customer_id}"

    def test_disconnect_drops_subscription(self, client, widget_session, conversation):
        with client.websocket_connect(f"/ws/widget?token={widget_session.session_token}") as ws:
            ws.receive_json()
            ws.send_json({"type": "ping"})
            _receive_until(ws, "heartbeat")

        assert f"widget:{widget_session.id}" not in get_connection_manager().subscribers(str(conversation.id))


class TestFrames:
    def test_event_frame_is_json_ready(self):
        frame = WebSocketEvent(event=EventType.HEARTBEAT, data={"status": "ok"}).to_frame()

        assert frame["event"] == "heartbeat"
        assert frame["data"] == {"status": "ok"}
        assert isinstance(frame["timestamp"], str)

    def test_parse_inbound(self):
        message = InboundMessage.parse('{"type": "subscribe", "conversation_id": "c1"}')

        assert message.type == InboundMessageType.SUBSCRIBE
        assert message.conversation_id == "c1"

    @pytest.mark.parametrize("raw", ["not json", '{"type": "shout"}', "[]"])
    def test_parse_rejects_unknown_frames(self, raw):
        assert InboundMessage.parse(raw) is None

    @pytest.mark.parametrize("raw,expected", [('{"type": "typing"}', True), ('{"type": "typing", "is_typing": false}', False)])
    def test_bare_typing_frame_means_started(self, raw, expected):
        assert InboundMessage.parse(raw).typing_state is expected
