"""Sync entry points that push events from request handlers.

HTTP handlers run in worker threads; coroutines are handed to the event
loop that owns the push connections when there is one.
"""

from __future__ import annotations

import asyncio
from concurrent.futures import Future
from typing import TYPE_CHECKING

from chatdesk.logging import get_logger
from chatdesk.websocket.events import EventType, WebSocketEvent
from chatdesk.websocket.manager import get_connection_manager

if TYPE_CHECKING:
    from chatdesk.models import Conversation

logger = get_logger(__name__)


def _handle_task_exception(task: asyncio.Task | Future):
    """Log exceptions from background tasks."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc:
        logger.error("websocket_task_error error=%s", exc, exc_info=exc)


def _run_async(coro):
    """Run an async coroutine from sync code with error handling."""
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = None

    if loop is not None:
        task = loop.create_task(coro)
        task.add_done_callback(_handle_task_exception)
        return

    owner = get_connection_manager().loop
    if owner is not None and owner.is_running() and not owner.is_closed():
        future = asyncio.run_coroutine_threadsafe(coro, owner)
        future.add_done_callback(_handle_task_exception)
        return

    # No live push loop in this process; nothing local to deliver to.
    coro.close()


def broadcast_new_message(message_payload: dict, conversation_id: str):
    """Push a persisted message, fully serialized, to the conversation's subscribers."""
    event = WebSocketEvent(event=EventType.MESSAGE_NEW, data=message_payload)
    manager = get_connection_manager()
    _run_async(manager.broadcast_to_conversation(str(conversation_id), event))
    logger.debug(
        "broadcast_new_message conversation_id=%s message_id=%s",
        conversation_id,
        message_payload.get("id"),
    )


def broadcast_conversation_updated(conversation: Conversation):
    """Push status / assignment changes."""
    event = WebSocketEvent(
        event=EventType.CONVERSATION_UPDATED,
        data={
            "conversationId": str(conversation.id),
            "status": conversation.status.value if conversation.status else None,
            "agentId": str(conversation.agent_id) if conversation.agent_id else None,
        },
    )
    manager = get_connection_manager()
    _run_async(manager.broadcast_to_conversation(str(conversation.id), event))
    logger.debug("broadcast_conversation_updated conversation_id=%s", conversation.id)


def broadcast_typing(conversation_id: str, actor_key: str, is_typing: bool, full_name: str | None = None):
    event = WebSocketEvent(
        event=EventType.USER_TYPING,
        data={
            "conversationId": str(conversation_id),
            "actorKey": actor_key,
            "isTyping": is_typing,
            "fullName": full_name,
        },
    )
    manager = get_connection_manager()
    _run_async(manager.broadcast_to_conversation(str(conversation_id), event))


def subscribe_widget_to_conversation(session_id: str, conversation_id: str):
    """
    Subscribe a widget session's connections to its conversation and notify them.

    Called when a conversation is created for a widget session.
    """
    manager = get_connection_manager()
    connection_key = f"widget:{session_id}"
    _run_async(manager.subscribe_conversation(connection_key, str(conversation_id)))
    event = WebSocketEvent(
        event=EventType.CONVERSATION_CREATED,
        data={"conversationId": str(conversation_id)},
    )
    _run_async(manager.broadcast_to_connection(connection_key, event))
    logger.debug(
        "widget_auto_subscribed session_id=%s conversation_id=%s",
        session_id,
        conversation_id,
    )
