"""Visitor identity and session-token persistence for the widget client.

Values are mirrored across several storage layers (cookie, long-lived, tab
scoped). Reads take the first non-empty value in priority order; every
resolution writes the winner back to all layers so a value surviving in only
one of them heals the others.
"""

from __future__ import annotations

import hashlib
import json
import secrets
import string
import time
from dataclasses import dataclass
from http.cookiejar import Cookie, CookieJar
from pathlib import Path
from typing import Protocol

from chatdesk.logging import get_logger

logger = get_logger(__name__)

VISITOR_ID_KEY = "chatdesk_visitor_id"
SESSION_TOKEN_KEY_PREFIX = "chatdesk_session_"
COOKIE_MAX_AGE_SECONDS = 365 * 24 * 60 * 60

_RANDOM_ALPHABET = string.ascii_lowercase + string.digits


def session_token_key(widget_key: str) -> str:
    return f"{SESSION_TOKEN_KEY_PREFIX}{widget_key}"


class StorageLayer(Protocol):
    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...


class MemoryStorage:
    """Dict-backed layer; stands in for tab-scoped storage and for tests."""

    def __init__(self, initial: dict[str, str] | None = None):
        self._data: dict[str, str] = dict(initial or {})

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)


class FileStorage:
    """Long-lived layer persisted as a flat JSON object."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def _load(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        data = json.loads(self.path.read_text(encoding="utf-8") or "{}")
        if not isinstance(data, dict):
            raise ValueError(f"Unexpected storage payload in {self.path}")
        return data

    def _dump(self, data: dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(data, sort_keys=True), encoding="utf-8")

    def get(self, key: str) -> str | None:
        value = self._load().get(key)
        return value if isinstance(value, str) else None

    def set(self, key: str, value: str) -> None:
        data = self._load()
        data[key] = value
        self._dump(data)

    def delete(self, key: str) -> None:
        data = self._load()
        if data.pop(key, None) is not None:
            self._dump(data)


class CookieStorage:
    """Cookie layer on a ``http.cookiejar`` jar, one-year expiry."""

    def __init__(self, jar: CookieJar | None = None, domain: str = "localhost", path: str = "/"):
        self.jar = jar if jar is not None else CookieJar()
        self.domain = domain
        self.path = path

    def get(self, key: str) -> str | None:
        now = time.time()
        for cookie in self.jar:
            if cookie.name == key and cookie.domain == self.domain and not cookie.is_expired(now):
                return cookie.value
        return None

    def set(self, key: str, value: str) -> None:
        cookie = Cookie(
            version=0,
            name=key,
            value=value,
            port=None,
            port_specified=False,
            domain=self.domain,
            domain_specified=True,
            domain_initial_dot=False,
            path=self.path,
            path_specified=True,
            secure=False,
            expires=int(time.time()) + COOKIE_MAX_AGE_SECONDS,
            discard=False,
            comment=None,
            comment_url=None,
            rest={"SameSite": "Lax"},
        )
        self.jar.set_cookie(cookie)

    def delete(self, key: str) -> None:
        try:
            self.jar.clear(self.domain, self.path, key)
        except KeyError:
            return


@dataclass(frozen=True)
class DeviceProfile:
    """Coarse device traits hashed into the visitor id. Collisions are acceptable."""

    user_agent: str = ""
    language: str = ""
    screen_width: int = 0
    screen_height: int = 0
    color_depth: int = 0
    timezone_offset: int = 0

    def fingerprint(self) -> str:
        raw = "|".join(
            [
                self.user_agent,
                self.language,
                f"{self.screen_width}x{self.screen_height}",
                str(self.color_depth),
                str(self.timezone_offset),
            ]
        )
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:8]


def generate_visitor_id(profile: DeviceProfile | None = None) -> str:
    timestamp_ms = int(time.time() * 1000)
    fingerprint = (profile or DeviceProfile()).fingerprint()
    suffix = "".join(secrets.choice(_RANDOM_ALPHABET) for _ in range(9))
    return f"visitor_{timestamp_ms}_{fingerprint}_{suffix}"


class IdentityStore:
    """Resolves the visitor id and per-widget session tokens across storage layers."""

    def __init__(self, layers: list[StorageLayer], profile: DeviceProfile | None = None):
        self.layers = list(layers)
        self.profile = profile or DeviceProfile()

    def _read(self, key: str) -> str | None:
        for layer in self.layers:
            try:
                value = layer.get(key)
            except Exception as exc:
                logger.debug("identity_layer_read_failed layer=%s key=%s error=%s", type(layer).__name__, key, exc)
                continue
            if value:
                return value
        return None

    def _write_all(self, key: str, value: str) -> None:
        for layer in self.layers:
            try:
                layer.set(key, value)
            except Exception as exc:
                logger.debug("identity_layer_write_failed layer=%s key=%s error=%s", type(layer).__name__, key, exc)

    def _delete_all(self, key: str) -> None:
        for layer in self.layers:
            try:
                layer.delete(key)
            except Exception as exc:
                logger.debug("identity_layer_delete_failed layer=%s key=%s error=%s", type(layer).__name__, key, exc)

    def get_or_create_visitor_id(self) -> str:
        visitor_id = self._read(VISITOR_ID_KEY)
        if not visitor_id:
            visitor_id = generate_visitor_id(self.profile)
            logger.debug("visitor_id_generated visitor_id=%s", visitor_id)
        self._write_all(VISITOR_ID_KEY, visitor_id)
        return visitor_id

    def get_session_token(self, widget_key: str) -> str | None:
        key = session_token_key(widget_key)
        token = self._read(key)
        if token:
            self._write_all(key, token)
        return token

    def set_session_token(self, widget_key: str, token: str) -> None:
        self._write_all(session_token_key(widget_key), token)

    def clear_session_token(self, widget_key: str) -> None:
        self._delete_all(session_token_key(widget_key))
