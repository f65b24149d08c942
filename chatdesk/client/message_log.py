"""Local ordered message log with pending (optimistic) and confirmed entries.

Every message id appears at most once. Optimistic sends sit under their
client-generated id until the server copy arrives, at which point the entry
is re-keyed in place so its position is kept.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Literal

EntryState = Literal["pending", "confirmed"]
MergeKind = Literal["inserted", "confirmed", "duplicate"]


def _parse_ts(value: Any) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    else:
        return datetime.min.replace(tzinfo=UTC)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed


@dataclass(eq=False)
class LogEntry:
    key: str
    message: dict[str, Any]
    state: EntryState
    client_message_id: str | None = None

    @property
    def created_at(self) -> datetime:
        return _parse_ts(self.message.get("createdAt"))


@dataclass(frozen=True)
class MergeResult:
    kind: MergeKind
    entry: LogEntry

    @property
    def is_new(self) -> bool:
        return self.kind == "inserted"


class MessageLog:
    def __init__(self):
        self._entries: list[LogEntry] = []
        self._by_key: dict[str, LogEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._by_key

    def entries(self) -> list[LogEntry]:
        return list(self._entries)

    def messages(self) -> list[dict[str, Any]]:
        return [entry.message for entry in self._entries]

    def get(self, key: str) -> LogEntry | None:
        return self._by_key.get(key)

    def pending(self) -> list[LogEntry]:
        return [entry for entry in self._entries if entry.state == "pending"]

    def clear(self) -> None:
        self._entries.clear()
        self._by_key.clear()

    def append_pending(self, client_message_id: str, message: dict[str, Any]) -> LogEntry:
        """Optimistic append at the end of the log."""
        if client_message_id in self._by_key:
            return self._by_key[client_message_id]
        payload = dict(message)
        payload.setdefault("id", client_message_id)
        payload.setdefault("clientMessageId", client_message_id)
        payload.setdefault("createdAt", datetime.now(UTC).isoformat())
        entry = LogEntry(
            key=client_message_id,
            message=payload,
            state="pending",
            client_message_id=client_message_id,
        )
        self._entries.append(entry)
        self._by_key[client_message_id] = entry
        return entry

    def rollback(self, client_message_id: str) -> LogEntry | None:
        """Drop a pending entry after a failed send."""
        entry = self._by_key.get(client_message_id)
        if entry is None or entry.state != "pending":
            return None
        self._remove(entry)
        return entry

    def confirm(self, client_message_id: str, server_message: dict[str, Any]) -> MergeResult:
        """
        Replace a pending entry with the server copy, keeping its position.

        If the server copy already landed (pushed before the send returned),
        the pending entry is dropped instead and the result is a duplicate.
        """
        server_id = str(server_message["id"])
        existing = self._by_key.get(server_id)
        pending = self._by_key.get(client_message_id)
        if existing is not None:
            if pending is not None and pending is not existing and pending.state == "pending":
                self._remove(pending)
            existing.message = dict(server_message)
            return MergeResult("duplicate", existing)
        if pending is None or pending.state != "pending":
            return self._insert(server_message)

        del self._by_key[pending.key]
        pending.key = server_id
        pending.message = dict(server_message)
        pending.state = "confirmed"
        self._by_key[server_id] = pending
        return MergeResult("confirmed", pending)

    def merge(self, server_message: dict[str, Any]) -> MergeResult:
        """Confirm-or-insert-if-absent for a message that came from the server."""
        server_id = str(server_message["id"])
        existing = self._by_key.get(server_id)
        if existing is not None:
            existing.message = dict(server_message)
            return MergeResult("duplicate", existing)

        client_message_id = server_message.get("clientMessageId")
        if client_message_id:
            pending = self._by_key.get(client_message_id)
            if pending is not None and pending.state == "pending":
                return self.confirm(client_message_id, server_message)

        return self._insert(server_message)

    def merge_history(self, messages: list[dict[str, Any]]) -> list[MergeResult]:
        return [self.merge(message) for message in messages]

    def _insert(self, server_message: dict[str, Any]) -> MergeResult:
        entry = LogEntry(
            key=str(server_message["id"]),
            message=dict(server_message),
            state="confirmed",
            client_message_id=server_message.get("clientMessageId"),
        )
        created_at = entry.created_at
        position = len(self._entries)
        while position > 0 and self._entries[position - 1].created_at > created_at:
            position -= 1
        self._entries.insert(position, entry)
        self._by_key[entry.key] = entry
        return MergeResult("inserted", entry)

    def _remove(self, entry: LogEntry) -> None:
        self._entries.remove(entry)
        self._by_key.pop(entry.key, None)
