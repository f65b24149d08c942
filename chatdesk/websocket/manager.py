from __future__ import annotations

import asyncio
import contextlib
import json
from typing import Any

import redis.asyncio as aioredis
from fastapi import WebSocket
from redis.exceptions import RedisError
from starlette.websockets import WebSocketDisconnect, WebSocketState

from chatdesk.config import settings
from chatdesk.logging import get_logger
from chatdesk.websocket.events import EventType, WebSocketEvent

logger = get_logger(__name__)

CHANNEL_PREFIX = "inbox_ws:"


class ConnectionManager:
    """
    Tracks push connections and fans events out through Redis pub/sub.

    Local connection pool: connection key -> [WebSocket]
    Conversation subscriptions: conversation_id -> set[connection key]

    Widget connections are keyed ``widget:<session_id>``.
    """

    def __init__(self, redis_url: str | None = None) -> None:
        self._redis_url = redis_url or settings.redis_url
        self._connections: dict[str, list[WebSocket]] = {}
        self._subscriptions: dict[str, set[str]] = {}
        self._redis_client: Any | None = None
        self._pubsub: Any | None = None
        self._listener_task: asyncio.Task | None = None
        self._heartbeat_tasks: dict[tuple[str, int], asyncio.Task] = {}
        self._running = False
        self.loop: asyncio.AbstractEventLoop | None = None

    async def connect(self) -> None:
        """Initialize Redis connection and start listener."""
        self.loop = asyncio.get_running_loop()
        client = aioredis.from_url(self._redis_url, decode_responses=True)
        try:
            pubsub = client.pubsub()
            await pubsub.psubscribe(f"{CHANNEL_PREFIX}*")
        except (RedisError, OSError) as exc:
            logger.warning("websocket_manager_redis_failed error=%s", exc)
            with contextlib.suppress(RedisError, OSError):
                await client.aclose()
            return
        self._redis_client = client
        self._pubsub = pubsub
        self._running = True
        self._listener_task = asyncio.create_task(self._redis_listener())
        logger.info("websocket_manager_connected redis=%s", self._redis_url)

    async def disconnect(self) -> None:
        """Cleanup Redis connection and stop listener."""
        self._running = False
        if self._listener_task:
            self._listener_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._listener_task
        if self._pubsub:
            await self._pubsub.punsubscribe()
            await self._pubsub.aclose()
        if self._redis_client:
            await self._redis_client.aclose()
        self._pubsub = None
        self._redis_client = None
        logger.info("websocket_manager_disconnected")

    async def _redis_listener(self) -> None:
        """Dispatch pub/sub messages to local connections."""
        if not self._pubsub:
            return
        pubsub = self._pubsub
        try:
            while self._running:
                message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                if message and message["type"] == "pmessage":
                    await self._handle_redis_message(message["channel"], message["data"])
        except asyncio.CancelledError:
            pass
        except RedisError as exc:
            logger.error("websocket_redis_listener_error error=%s", exc)

    async def _handle_redis_message(self, channel: str, data: str) -> None:
        try:
            payload = json.loads(data)
        except json.JSONDecodeError:
            logger.warning("websocket_redis_message_invalid channel=%s", channel)
            return

        conversation_id = payload.get("conversation_id")
        connection_key = payload.get("connection_key")
        event_data = payload.get("event")
        if not event_data:
            return
        if connection_key:
            await self._dispatch_to_connection(connection_key, event_data)
        elif conversation_id:
            await self._dispatch_to_subscribers(conversation_id, event_data)

    async def _dispatch_to_subscribers(self, conversation_id: str, event_data: dict) -> None:
        for connection_key in list(self._subscriptions.get(conversation_id, set())):
            await self._dispatch_to_connection(connection_key, event_data)

    async def _dispatch_to_connection(self, connection_key: str, event_data: dict) -> None:
        for ws in list(self._connections.get(connection_key, [])):
            try:
                if ws.client_state == WebSocketState.CONNECTED:
                    await ws.send_json(event_data)
            except (RuntimeError, OSError, WebSocketDisconnect):
                await self._remove_connection(connection_key, ws)

    async def register_connection(self, connection_key: str, websocket: WebSocket) -> None:
        """Register a connection and acknowledge it."""
        self.loop = asyncio.get_running_loop()
        self._connections.setdefault(connection_key, []).append(websocket)
        logger.debug("websocket_registered connection_key=%s", connection_key)

        ack_event = WebSocketEvent(
            event=EventType.CONNECTION_ACK,
            data={"connection_key": connection_key, "status": "connected"},
        )
        await websocket.send_json(ack_event.to_frame())
        self._start_heartbeat(connection_key, websocket)

    async def unregister_connection(self, connection_key: str, websocket: WebSocket) -> None:
        await self._remove_connection(connection_key, websocket)

    async def _remove_connection(self, connection_key: str, websocket: WebSocket) -> None:
        """Drop a connection; the last connection for a key also drops its subscriptions."""
        self._stop_heartbeat(connection_key, websocket)
        if connection_key in self._connections:
            if websocket in self._connections[connection_key]:
                self._connections[connection_key].remove(websocket)
            if not self._connections[connection_key]:
                del self._connections[connection_key]

        if connection_key not in self._connections:
            for conv_id in list(self._subscriptions.keys()):
                self._subscriptions[conv_id].discard(connection_key)
                if not self._subscriptions[conv_id]:
                    del self._subscriptions[conv_id]

        logger.debug("websocket_unregistered connection_key=%s", connection_key)

    def _start_heartbeat(self, connection_key: str, websocket: WebSocket) -> None:
        key = (connection_key, id(websocket))
        if key in self._heartbeat_tasks:
            return
        self._heartbeat_tasks[key] = asyncio.create_task(self._heartbeat_loop(connection_key, websocket))

    def _stop_heartbeat(self, connection_key: str, websocket: WebSocket) -> None:
        task = self._heartbeat_tasks.pop((connection_key, id(websocket)), None)
        if task:
            task.cancel()

    async def _heartbeat_loop(self, connection_key: str, websocket: WebSocket) -> None:
        try:
            while websocket.client_state == WebSocketState.CONNECTED:
                await asyncio.sleep(settings.ws_heartbeat_interval)
                await self.send_heartbeat(connection_key, websocket)
        except asyncio.CancelledError:
            pass

    async def subscribe_conversation(self, connection_key: str, conversation_id: str) -> None:
        self._subscriptions.setdefault(conversation_id, set()).add(connection_key)
        logger.debug(
            "websocket_subscribed connection_key=%s conversation_id=%s",
            connection_key,
            conversation_id,
        )

    async def unsubscribe_conversation(self, connection_key: str, conversation_id: str) -> None:
        if conversation_id in self._subscriptions:
            self._subscriptions[conversation_id].discard(connection_key)
            if not self._subscriptions[conversation_id]:
                del self._subscriptions[conversation_id]
        logger.debug(
            "websocket_unsubscribed connection_key=%s conversation_id=%s",
            connection_key,
            conversation_id,
        )

    def subscribers(self, conversation_id: str) -> set[str]:
        return set(self._subscriptions.get(conversation_id, set()))

    async def broadcast_to_conversation(self, conversation_id: str, event: WebSocketEvent) -> None:
        """Broadcast an event to all subscribers of a conversation via Redis."""
        event_data = event.to_frame()

        # The Redis listener delivers locally too, so a successful publish is the only dispatch.
        if self._redis_client:
            try:
                payload = json.dumps({"conversation_id": conversation_id, "event": event_data})
                await self._redis_client.publish(f"{CHANNEL_PREFIX}{conversation_id}", payload)
                return
            except RedisError as exc:
                logger.warning("websocket_broadcast_redis_error error=%s", exc)

        await self._dispatch_to_subscribers(conversation_id, event_data)

    async def broadcast_to_connection(self, connection_key: str, event: WebSocketEvent) -> None:
        """Send an event to every connection registered under one key."""
        event_data = event.to_frame()

        if self._redis_client:
            try:
                payload = json.dumps({"connection_key": connection_key, "event": event_data})
                await self._redis_client.publish(f"{CHANNEL_PREFIX}conn:{connection_key}", payload)
                return
            except RedisError as exc:
                logger.warning("websocket_broadcast_redis_error error=%s", exc)

        await self._dispatch_to_connection(connection_key, event_data)

    async def send_heartbeat(self, connection_key: str, websocket: WebSocket) -> None:
        heartbeat = WebSocketEvent(event=EventType.HEARTBEAT, data={"status": "ok"})
        try:
            await websocket.send_json(heartbeat.to_frame())
        except (RuntimeError, OSError, WebSocketDisconnect):
            await self._remove_connection(connection_key, websocket)


# Singleton instance
_manager: ConnectionManager | None = None


def get_connection_manager() -> ConnectionManager:
    """Get the singleton ConnectionManager instance."""
    global _manager
    if _manager is None:
        _manager = ConnectionManager()
    return _manager
