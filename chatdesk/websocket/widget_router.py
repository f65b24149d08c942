"""WebSocket endpoint for widget visitors."""

from __future__ import annotations

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from chatdesk.db import SessionLocal
from chatdesk.errors import ChatDeskError
from chatdesk.logging import get_logger
from chatdesk.middleware.widget_rate_limit import check_websocket_rate
from chatdesk.services import presence
from chatdesk.services.conversations import conversations
from chatdesk.services.sessions import widget_sessions
from chatdesk.websocket.events import EventType, InboundMessage, InboundMessageType, WebSocketEvent
from chatdesk.websocket.manager import ConnectionManager, get_connection_manager
from chatdesk.websocket.widget_auth import authenticate_widget_visitor

logger = get_logger(__name__)

router = APIRouter(tags=["websocket-widget"])


@router.websocket("/ws/widget")
async def widget_websocket(websocket: WebSocket):
    """
    Push channel for widget visitors.

    Authentication: ?token={session_token} query param

    Client messages:
    - {type: "subscribe", conversation_id} - Subscribe (e.g. after reconnect)
    - {type: "unsubscribe", conversation_id}
    - {type: "typing", is_typing: true|false} - Typing indicator
    - {type: "ping"} - Keep-alive ping

    Server events:
    - message_new - Persisted message, fully serialized
    - conversation_updated - Status / assignment change
    - conversation_created - Conversation attached to this session
    - user_typing - Someone is typing
    - connection_ack - Connection established / subscription confirmed
    - heartbeat - Ping response
    """
    await websocket.accept()

    auth_result = await authenticate_widget_visitor(websocket)
    if not auth_result:
        return

    session_id = auth_result["session_id"]
    allowed, _remaining = check_websocket_rate(session_id)
    if not allowed:
        await websocket.close(code=4029, reason="Too many connections")
        return

    connection_key = f"widget:{session_id}"
    manager = get_connection_manager()
    await manager.register_connection(connection_key, websocket)

    conversation_id = auth_result.get("conversation_id")
    if conversation_id:
        await manager.subscribe_conversation(connection_key, conversation_id)

    try:
        while True:
            data = await websocket.receive_text()
            await _handle_widget_message(auth_result, connection_key, websocket, data, manager)
    except WebSocketDisconnect:
        logger.debug("widget_websocket_disconnected session_id=%s", session_id)
    finally:
        await manager.unregister_connection(connection_key, websocket)


async def _send(websocket: WebSocket, event: EventType, data: dict) -> None:
    await websocket.send_json(WebSocketEvent(event=event, data=data).to_frame())


async def _handle_widget_message(
    auth: dict,
    connection_key: str,
    websocket: WebSocket,
    raw_data: str,
    manager: ConnectionManager,
):
    """Process one client frame. Bad frames are logged and dropped."""
    session_id = auth["session_id"]
    message = InboundMessage.parse(raw_data)
    if message is None:
        logger.warning("widget_websocket_invalid_message session_id=%s", session_id)
        return

    if message.type == InboundMessageType.PING:
        await _send(websocket, EventType.HEARTBEAT, {"status": "ok"})

    elif message.type == InboundMessageType.SUBSCRIBE:
        conv_id = message.conversation_id or auth.get("conversation_id")
        if not conv_id or not _may_access(auth, conv_id):
            await _send(websocket, EventType.CONNECTION_ACK, {"subscribedTo": None, "error": "forbidden"})
            return
        await manager.subscribe_conversation(connection_key, conv_id)
        await _send(websocket, EventType.CONNECTION_ACK, {"subscribedTo": conv_id})
        logger.debug("widget_subscribed_via_ws session_id=%s conversation_id=%s", session_id, conv_id)

    elif message.type == InboundMessageType.UNSUBSCRIBE:
        if message.conversation_id:
            await manager.unsubscribe_conversation(connection_key, message.conversation_id)

    elif message.type == InboundMessageType.TYPING:
        conv_id = message.conversation_id or auth.get("conversation_id")
        if not conv_id:
            return
        is_typing = message.typing_state
        actor_key = _record_typing(auth, conv_id, is_typing)
        if actor_key:
            event = WebSocketEvent(
                event=EventType.USER_TYPING,
                data={"conversationId": conv_id, "actorKey": actor_key, "isTyping": is_typing},
            )
            await manager.broadcast_to_conversation(conv_id, event)


def _may_access(auth: dict, conversation_id: str) -> bool:
    db = SessionLocal()
    try:
        session = widget_sessions.get_active_session(db, auth["token"])
        conversations.get_for_session(db, session, conversation_id)
        return True
    except ChatDeskError:
        return False
    finally:
        db.close()


def _record_typing(auth: dict, conversation_id: str, is_typing: bool) -> str | None:
    db = SessionLocal()
    try:
        session = widget_sessions.get_active_session(db, auth["token"])
        conversation = conversations.get_for_session(db, session, conversation_id)
        if not conversation.widget_customer_id:
            return None
        actor = presence.TypingActor.widget(conversation.widget_customer_id)
        presence.set_typing(db, conversation.id, actor, is_typing)
        return actor.key
    except ChatDeskError as exc:
        logger.info("widget_typing_rejected session_id=%s code=%s", auth["session_id"], exc.code)
        return None
    finally:
        db.close()

