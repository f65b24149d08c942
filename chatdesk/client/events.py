"""Host-page event registry for the widget client."""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Callable
from enum import StrEnum
from typing import Any

from chatdesk.logging import get_logger

logger = get_logger(__name__)


class WidgetEvent(StrEnum):
    READY = "ready"
    ERROR = "error"
    OPENED = "opened"
    CLOSED = "closed"
    CONVERSATION_STARTED = "conversation_started"
    MESSAGE_SENT = "message_sent"
    MESSAGE_RECEIVED = "message_received"
    TYPING = "typing"
    IDENTIFIED = "identified"
    TRACKED = "tracked"
    DESTROYED = "destroyed"


Callback = Callable[[Any], None]


class EventRegistry:
    def __init__(self):
        self._callbacks: dict[WidgetEvent, list[Callback]] = defaultdict(list)

    def on(self, event: WidgetEvent | str, callback: Callback) -> None:
        self._callbacks[WidgetEvent(event)].append(callback)

    def off(self, event: WidgetEvent | str, callback: Callback | None = None) -> None:
        event = WidgetEvent(event)
        if callback is None:
            self._callbacks.pop(event, None)
            return
        callbacks = self._callbacks.get(event, [])
        if callback in callbacks:
            callbacks.remove(callback)

    def emit(self, event: WidgetEvent | str, data: Any = None) -> None:
        """Call every listener; a failing listener is logged and does not stop the rest."""
        event = WidgetEvent(event)
        for callback in list(self._callbacks.get(event, [])):
            try:
                callback(data)
            except Exception:
                logger.exception("widget_event_callback_failed event=%s", event.value)
