"""Push-channel subscription that keeps a MessageLog in sync with the server.

Pushed messages are merged (confirm or insert-if-absent), never appended
blindly. Every connect, the first one included, subscribes and then fetches
and merges the full history before push handling starts, so nothing stored
between the initial load and the subscription, or during an outage, is lost.
The initial history load is silent: listeners and the notification only see
messages that arrive after it.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from typing import Any
from urllib.parse import urlencode

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from chatdesk.client.api import WidgetApiClient, WidgetTransportError
from chatdesk.client.message_log import MergeResult, MessageLog
from chatdesk.logging import get_logger
from chatdesk.services.observability import PUSH_EVENTS

logger = get_logger(__name__)

# Close codes after which reconnecting cannot succeed.
FATAL_CLOSE_CODES = {4001, 4003}


class SubscribeRejectedError(Exception):
    pass


class ConversationFeed:
    def __init__(
        self,
        ws_url: str,
        api: WidgetApiClient,
        log: MessageLog,
        *,
        token: str,
        viewer_role: str = "customer",
        play_notification_sound: bool = False,
        on_message: Callable[[dict], None] | None = None,
        on_notify: Callable[[dict], None] | None = None,
        on_typing: Callable[[dict], None] | None = None,
        on_conversation_updated: Callable[[dict], None] | None = None,
        on_error: Callable[[Exception], None] | None = None,
        connect: Callable[..., Any] | None = None,
        backoff_initial: float = 0.5,
        backoff_max: float = 30.0,
    ):
        self.ws_url = ws_url
        self.api = api
        self.log = log
        self.token = token
        self.viewer_role = viewer_role
        self.play_notification_sound = play_notification_sound
        self.on_message = on_message
        self.on_notify = on_notify
        self.on_typing = on_typing
        self.on_conversation_updated = on_conversation_updated
        self.on_error = on_error
        self._connect = connect or websockets.connect
        self.backoff_initial = backoff_initial
        self.backoff_max = backoff_max

        self.conversation_id: str | None = None
        self.connected = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._ws = None
        self._stopped = True

    @property
    def attached(self) -> bool:
        return self._task is not None and not self._task.done()

    def _url(self) -> str:
        return f"{self.ws_url}?{urlencode({'token': self.token})}"

    def _backoff(self, attempt: int) -> float:
        return min(self.backoff_max, self.backoff_initial * (2**attempt))

    async def attach(self, conversation_id: str) -> None:
        """Load history, then follow the conversation's push channel until detached."""
        if self.attached and self.conversation_id == str(conversation_id):
            return
        await self.detach()
        self.conversation_id = str(conversation_id)
        self._stopped = False
        await self.resync(notify=False)
        self._task = asyncio.create_task(self._run())
        logger.debug("feed_attached conversation_id=%s", self.conversation_id)

    async def detach(self) -> None:
        self._stopped = True
        self.connected.clear()
        task, self._task = self._task, None
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            logger.debug("feed_detached conversation_id=%s", self.conversation_id)

    async def resync(self, *, notify: bool = True) -> list[MergeResult]:
        """Fetch the full history and merge it into the log.

        With ``notify=False`` new entries are merged without calling
        ``on_message`` or ``on_notify``.
        """
        if not self.conversation_id:
            return []
        messages = await self.api.list_messages(self.token, self.conversation_id)
        results = self.log.merge_history(messages)
        for result in results:
            self._accept(result, notify=notify)
        logger.debug(
            "feed_resynced conversation_id=%s fetched=%s new=%s",
            self.conversation_id,
            len(messages),
            sum(1 for r in results if r.is_new),
        )
        return results

    def merge_message(self, message: dict[str, Any]) -> MergeResult:
        result = self.log.merge(message)
        self._accept(result)
        return result

    def confirm_sent(self, client_message_id: str, message: dict[str, Any]) -> MergeResult:
        result = self.log.confirm(client_message_id, message)
        self._accept(result)
        return result

    def _accept(self, result: MergeResult, *, notify: bool = True) -> None:
        PUSH_EVENTS.labels(result=result.kind).inc()
        if not result.is_new or not notify:
            return
        message = result.entry.message
        if self.on_message:
            self.on_message(message)
        sender_type = message.get("senderType")
        if self.play_notification_sound and sender_type and sender_type != self.viewer_role and self.on_notify:
            self.on_notify(message)

    def handle_event(self, payload: dict[str, Any]) -> MergeResult | None:
        """Apply one push event. Returns the merge result for ``message_new``."""
        event = payload.get("event")
        data = payload.get("data") or {}

        if event == "message_new":
            if str(data.get("conversationId")) != self.conversation_id:
                return None
            return self.merge_message(data)
        if event == "user_typing":
            if self.on_typing:
                self.on_typing(data)
        elif event == "conversation_updated":
            if self.on_conversation_updated:
                self.on_conversation_updated(data)
        elif event == "connection_ack" and "subscribedTo" in data and not data.get("subscribedTo"):
            raise SubscribeRejectedError(data.get("error") or "subscribe rejected")
        return None

    async def _run(self) -> None:
        attempt = 0
        while not self._stopped:
            try:
                async with self._connect(self._url()) as ws:
                    self._ws = ws
                    await ws.send(json.dumps({"type": "subscribe", "conversation_id": self.conversation_id}))
                    # Frames buffered while this runs are deduplicated by the log.
                    await self.resync()
                    attempt = 0
                    self.connected.set()
                    async for raw in ws:
                        try:
                            payload = json.loads(raw)
                        except json.JSONDecodeError:
                            logger.warning("feed_invalid_frame conversation_id=%s", self.conversation_id)
                            continue
                        self.handle_event(payload)
            except ConnectionClosed as exc:
                code = exc.rcvd.code if exc.rcvd else None
                if code in FATAL_CLOSE_CODES:
                    logger.warning("feed_closed_by_server conversation_id=%s code=%s", self.conversation_id, code)
                    self._stopped = True
                    if self.on_error:
                        self.on_error(exc)
                    break
                logger.info("feed_connection_closed conversation_id=%s code=%s", self.conversation_id, code)
            except (OSError, WebSocketException, WidgetTransportError, SubscribeRejectedError) as exc:
                logger.info("feed_connection_failed conversation_id=%s error=%s", self.conversation_id, exc)
            finally:
                self._ws = None
                self.connected.clear()

            if self._stopped:
                break
            # Missed pushes are recovered by the resync on reconnect.
            await asyncio.sleep(self._backoff(attempt))
            attempt += 1
