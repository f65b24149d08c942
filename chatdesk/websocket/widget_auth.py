"""WebSocket authentication for widget visitors."""

from __future__ import annotations

from fastapi import WebSocket
from sqlalchemy.exc import SQLAlchemyError

from chatdesk.db import SessionLocal
from chatdesk.errors import SessionAuthError
from chatdesk.logging import get_logger
from chatdesk.services.sessions import widget_sessions
from chatdesk.services.widget_settings import widget_settings

logger = get_logger(__name__)


async def authenticate_widget_visitor(websocket: WebSocket) -> dict | None:
    """
    Authenticate a push connection for a widget visitor.

    Extracts the session token from the query string (?token=).
    Returns {session_id, organization_id, conversation_id, widget_customer_id}
    if valid, None otherwise (the socket is closed with 4001/4003).
    """
    token = websocket.query_params.get("token")

    if not token:
        await websocket.close(code=4001, reason="Session token required")
        return None

    db = SessionLocal()
    try:
        try:
            session = widget_sessions.get_active_session(db, token)
        except SessionAuthError:
            await websocket.close(code=4001, reason="Invalid session token")
            return None

        config = widget_settings.get_by_key(db, session.widget_key)
        if not config or not config.enabled:
            await websocket.close(code=4003, reason="Widget not available")
            return None

        conversation = session.conversation
        return {
            "session_id": str(session.id),
            "token": token,
            "organization_id": str(session.organization_id),
            "conversation_id": str(session.conversation_id) if session.conversation_id else None,
            "widget_customer_id": (
                str(conversation.widget_customer_id) if conversation and conversation.widget_customer_id else None
            ),
        }
    except SQLAlchemyError as e:
        logger.warning("widget_websocket_auth_error error=%s", e)
        await websocket.close(code=4001, reason="Authentication failed")
        return None
    finally:
        db.close()
