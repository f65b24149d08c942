"""Widget controller: boot, department selection, conversation start, send, teardown."""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Callable
from typing import Any

from chatdesk.client.api import WidgetApiClient, WidgetTransportError
from chatdesk.client.events import EventRegistry, WidgetEvent
from chatdesk.client.feed import ConversationFeed
from chatdesk.client.identity import IdentityStore
from chatdesk.client.message_log import MessageLog
from chatdesk.logging import get_logger
from chatdesk.services import prechat

logger = get_logger(__name__)


class ChatWidget:
    def __init__(
        self,
        widget_key: str,
        api_url: str,
        identity: IdentityStore,
        *,
        user_data: dict[str, Any] | None = None,
        current_url: str | None = None,
        api: WidgetApiClient | None = None,
        ws_url: str | None = None,
        feed_factory: Callable[..., ConversationFeed] | None = None,
    ):
        self.widget_key = widget_key
        self.api_url = api_url.rstrip("/")
        self.identity = identity
        self.user_data: dict[str, Any] = dict(user_data or {})
        self.current_url = current_url
        self.api = api or WidgetApiClient(self.api_url)
        self.ws_url = ws_url or self._default_ws_url()
        self._feed_factory = feed_factory or ConversationFeed

        self.events = EventRegistry()
        self.log = MessageLog()
        self.session: dict[str, Any] | None = None
        self.conversation: dict[str, Any] | None = None
        self.departments: list[dict[str, Any]] = []
        self.feed: ConversationFeed | None = None
        self.is_open = False
        self.composer = ""
        self.prechat_errors: list[str] = []
        self._send_tasks: set[asyncio.Task] = set()

    def _default_ws_url(self) -> str:
        if self.api_url.startswith("https://"):
            return "wss://" + self.api_url[len("https://") :] + "/ws/widget"
        if self.api_url.startswith("http://"):
            return "ws://" + self.api_url[len("http://") :] + "/ws/widget"
        return self.api_url + "/ws/widget"

    # ------------------------------------------------------------------
    # Host-page API
    # ------------------------------------------------------------------

    def on(self, event: WidgetEvent | str, callback: Callable[[Any], None]) -> None:
        self.events.on(event, callback)

    def off(self, event: WidgetEvent | str, callback: Callable[[Any], None] | None = None) -> None:
        self.events.off(event, callback)

    @property
    def config(self) -> dict[str, Any]:
        return (self.session or {}).get("config") or {}

    @property
    def token(self) -> str | None:
        return (self.session or {}).get("sessionToken")

    @property
    def auto_open_delay(self) -> int | None:
        """Seconds before the host should open the widget, or None when auto-open is off."""
        if not self.config.get("autoOpen"):
            return None
        return self.config.get("autoOpenDelay") or 5

    async def init(self) -> bool:
        """
        Resolve identity and session, then resume any attached conversation.

        Emits ``ready`` on success and ``error`` when the widget cannot start.
        """
        try:
            visitor_id = self.identity.get_or_create_visitor_id()
            stored_token = self.identity.get_session_token(self.widget_key)
            user_data = dict(self.user_data)
            if self.current_url:
                user_data["currentUrl"] = self.current_url
            self.session = await self.api.init(self.widget_key, visitor_id, stored_token, user_data or None)
            self.identity.set_session_token(self.widget_key, self.session["sessionToken"])

            conversation_id = self.session.get("conversationId")
            if conversation_id:
                await self._resume(conversation_id)
            if self.conversation is None:
                self.departments = await self.api.list_departments(self.session["sessionToken"])
        except WidgetTransportError as exc:
            logger.warning("widget_init_failed widget_key=%s code=%s", self.widget_key, exc.code)
            self.events.emit(WidgetEvent.ERROR, exc)
            return False

        self.events.emit(WidgetEvent.READY, self.session)
        return True

    async def _resume(self, conversation_id: str) -> None:
        # Errors propagate: a failed resume fails the boot.
        conversation = await self.api.get_conversation(self.token, conversation_id)
        if conversation.get("status") == "closed":
            return
        self.conversation = conversation
        await self._attach_feed()

    async def _attach_feed(self) -> None:
        if self.feed is None:
            self.feed = self._feed_factory(
                self.ws_url,
                self.api,
                self.log,
                token=self.token,
                viewer_role="customer",
                play_notification_sound=bool(self.config.get("playNotificationSound")),
                on_message=self._on_pushed_message,
                on_typing=lambda data: self.events.emit(WidgetEvent.TYPING, data),
                on_error=lambda exc: self.events.emit(WidgetEvent.ERROR, exc),
            )
        await self.feed.attach(self.conversation["id"])

    def _on_pushed_message(self, message: dict[str, Any]) -> None:
        if message.get("senderType") != "customer":
            self.events.emit(WidgetEvent.MESSAGE_RECEIVED, message)

    def _department(self, department_id: str | None) -> dict[str, Any] | None:
        if department_id is None:
            department_id = self.config.get("defaultDepartmentId")
        for department in self.departments:
            if str(department.get("id")) == str(department_id):
                return department
        return None

    async def start_conversation(
        self,
        department_id: str | None = None,
        pre_chat_data: dict[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        """Validate the pre-chat form locally, then create (or resume) the conversation."""
        if not self.session:
            return None
        pre_chat_data = dict(pre_chat_data or {})
        department = self._department(department_id)
        if department is not None:
            result = prechat.validate(department.get("preChatForm"), pre_chat_data)
            self.prechat_errors = list(result.missing_field_ids)
            if not result.ok:
                return None
            department_id = str(department["id"])

        try:
            self.conversation = await self.api.create_conversation(
                self.token,
                department_id=department_id,
                pre_chat_data=pre_chat_data,
                customer_data=self.user_data or None,
            )
            await self._attach_feed()
        except WidgetTransportError as exc:
            if exc.code == "prechat_incomplete":
                self.prechat_errors = list(exc.payload.get("missingFieldIds", []))
            self.events.emit(WidgetEvent.ERROR, exc)
            return None

        self.events.emit(WidgetEvent.CONVERSATION_STARTED, self.conversation)
        return self.conversation

    def send(self, content: str | None = None) -> asyncio.Task | None:
        """
        Optimistically append and send in the background.

        Input stays usable while sends are in flight; a failed send drops
        the pending entry and puts its text back in the composer.
        """
        text = (self.composer if content is None else content).strip()
        if not text or not self.session or not self.conversation:
            return None
        if content is None:
            self.composer = ""
        client_message_id = f"local_{uuid.uuid4().hex}"
        self.log.append_pending(
            client_message_id,
            {
                "conversationId": self.conversation["id"],
                "senderType": "customer",
                "content": text,
                "messageType": "text",
            },
        )
        task = asyncio.create_task(self._deliver(client_message_id, text))
        self._send_tasks.add(task)
        task.add_done_callback(self._send_tasks.discard)
        return task

    async def _deliver(self, client_message_id: str, text: str) -> dict[str, Any] | None:
        try:
            message = await self.api.send_message(
                self.token,
                self.conversation["id"],
                text,
                client_message_id=client_message_id,
            )
        except WidgetTransportError as exc:
            logger.info("widget_send_failed conversation_id=%s code=%s", self.conversation["id"], exc.code)
            self.log.rollback(client_message_id)
            self.composer = text if not self.composer else f"{text}\n{self.composer}"
            self.events.emit(WidgetEvent.ERROR, exc)
            return None

        if self.feed is not None:
            self.feed.confirm_sent(client_message_id, message)
        else:
            self.log.confirm(client_message_id, message)
        self.events.emit(WidgetEvent.MESSAGE_SENT, message)
        return message

    def identify(self, user_data: dict[str, Any]) -> None:
        self.user_data.update(user_data)
        self.events.emit(WidgetEvent.IDENTIFIED, user_data)

    def track(self, event_name: str, event_data: Any = None) -> None:
        self.events.emit(WidgetEvent.TRACKED, {"eventName": event_name, "eventData": event_data})

    def open(self) -> None:
        if self.is_open:
            return
        self.is_open = True
        self.events.emit(WidgetEvent.OPENED)

    def close(self) -> None:
        if not self.is_open:
            return
        self.is_open = False
        self.events.emit(WidgetEvent.CLOSED)

    def toggle(self) -> None:
        if self.is_open:
            self.close()
        else:
            self.open()

    async def destroy(self) -> None:
        """Release the push subscription and the HTTP client."""
        if self.feed is not None:
            await self.feed.detach()
            self.feed = None
        for task in list(self._send_tasks):
            task.cancel()
        await self.api.close()
        self.events.emit(WidgetEvent.DESTROYED)
