"""Sliding-window rate limits for the public widget surface.

Redis sorted sets back the windows so limits hold across API instances;
when Redis cannot be reached the limiter keeps per-process windows instead.
"""

from __future__ import annotations

import contextlib
import time
from collections import defaultdict
from threading import Lock
from typing import TYPE_CHECKING

import redis

from chatdesk.config import settings
from chatdesk.logging import get_logger

if TYPE_CHECKING:
    from uuid import UUID

logger = get_logger(__name__)

RATE_LIMIT_PREFIX = "widget_rate:"

# In-memory fallback storage
_memory_store: dict[str, list[float]] = defaultdict(list)
_memory_lock = Lock()


class WidgetRateLimiter:
    """Rate limiter for widget endpoints using Redis or in-memory storage."""

    def __init__(self, redis_url: str | None = None):
        self._redis_url = redis_url or settings.redis_url
        self._redis = None
        self._redis_available = None

    def _get_redis(self):
        if self._redis_available is False:
            return None

        if self._redis is None:
            try:
                self._redis = redis.from_url(self._redis_url, decode_responses=True)
                self._redis.ping()
                self._redis_available = True
                logger.info("widget_rate_limiter_redis_connected")
            except redis.RedisError as e:
                logger.warning("widget_rate_limiter_redis_unavailable error=%s", e)
                self._redis_available = False
                self._redis = None

        return self._redis

    def check_session_creation(
        self,
        ip_address: str,
        limit: int = 20,
        window_seconds: int | None = None,
    ) -> tuple[bool, int]:
        """
        Check if an IP may resolve another widget session.

        Args:
            ip_address: Client IP address
            limit: Maximum resolutions per window (widget setting)
            window_seconds: Window length; defaults to WIDGET_SESSION_RATE_WINDOW_SECONDS

        Returns:
            Tuple of (allowed: bool, remaining: int)
        """
        window = window_seconds or settings.widget_session_rate_window_seconds
        return self._check_rate(f"session_create:{ip_address}", limit, window)

    def check_message_send(
        self,
        session_id: UUID | str,
        limit: int | None = None,
        window_seconds: int = 60,
    ) -> tuple[bool, int]:
        """Check if a widget session may post another message."""
        return self._check_rate(
            f"message_send:{session_id}",
            limit or settings.widget_message_rate_per_minute,
            window_seconds,
        )

    def check_websocket_connection(
        self,
        session_id: UUID | str,
        limit: int = 10,
        window_seconds: int = 60,
    ) -> tuple[bool, int]:
        """Check if a widget session may open another push connection."""
        return self._check_rate(f"ws_connect:{session_id}", limit, window_seconds)

    def _check_rate(self, key: str, limit: int, window_seconds: int) -> tuple[bool, int]:
        client = self._get_redis()
        if client:
            return self._check_rate_redis(client, key, limit, window_seconds)
        return self._check_rate_memory(key, limit, window_seconds)

    def _check_rate_redis(
        self,
        client,
        key: str,
        limit: int,
        window_seconds: int,
    ) -> tuple[bool, int]:
        """Sorted-set sliding window: trim, count, add, then undo the add when over limit."""
        full_key = f"{RATE_LIMIT_PREFIX}{key}"
        now = time.time()
        window_start = now - window_seconds

        try:
            pipe = client.pipeline()
            pipe.zremrangebyscore(full_key, 0, window_start)
            pipe.zcard(full_key)
            pipe.zadd(full_key, {str(now): now})
            pipe.expire(full_key, window_seconds + 1)
            results = pipe.execute()
            current_count = results[1]

            if current_count >= limit:
                client.zrem(full_key, str(now))
                return False, 0

            return True, max(0, limit - current_count - 1)

        except redis.RedisError as e:
            logger.warning("widget_rate_limit_redis_error key=%s error=%s", key, e)
            # Fall back to allowing on error
            return True, limit - 1

    def _check_rate_memory(self, key: str, limit: int, window_seconds: int) -> tuple[bool, int]:
        now = time.time()
        window_start = now - window_seconds

        with _memory_lock:
            _memory_store[key] = [t for t in _memory_store[key] if t > window_start]
            current_count = len(_memory_store[key])

            if current_count >= limit:
                return False, 0

            _memory_store[key].append(now)
            return True, max(0, limit - current_count - 1)

    def reset(self, key: str | None = None) -> None:
        """Reset one key, or every key when none is given."""
        client = self._get_redis()
        if client and key:
            with contextlib.suppress(redis.RedisError):
                client.delete(f"{RATE_LIMIT_PREFIX}{key}")

        with _memory_lock:
            if key is None:
                _memory_store.clear()
            else:
                _memory_store.pop(key, None)


# Singleton instance
widget_rate_limiter = WidgetRateLimiter()


def check_session_creation_rate(ip_address: str, limit: int = 20) -> tuple[bool, int]:
    return widget_rate_limiter.check_session_creation(ip_address, limit)


def check_message_rate(session_id: UUID | str) -> tuple[bool, int]:
    return widget_rate_limiter.check_message_send(session_id)


def check_websocket_rate(session_id: UUID | str) -> tuple[bool, int]:
    return widget_rate_limiter.check_websocket_connection(session_id)
