"""Prometheus metrics for the widget session and conversation engine."""

from __future__ import annotations

from prometheus_client import Counter, Histogram

SESSIONS_RESOLVED = Counter(
    "widget_sessions_resolved_total",
    "Widget session resolutions by outcome",
    ["outcome"],  # outcome: token, visitor, created, race_lost
)

CONVERSATIONS_OPENED = Counter(
    "widget_conversations_total",
    "Conversation create calls from the widget",
    ["result"],  # result: created, resumed
)

MESSAGES_ACCEPTED = Counter(
    "conversation_messages_total",
    "Messages persisted, by sender type",
    ["sender_type", "status"],  # status: created, duplicate
)

STATUS_TRANSITIONS = Counter(
    "conversation_status_transitions_total",
    "Applied conversation status transitions",
    ["source", "target"],
)

PUSH_EVENTS = Counter(
    "widget_push_events_total",
    "Push channel events handled by the widget client",
    ["result"],  # result: inserted, confirmed, duplicate
)

SESSION_RESOLVE_TIME = Histogram(
    "widget_session_resolve_seconds",
    "Time spent resolving a widget session",
)
