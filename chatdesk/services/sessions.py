"""Widget session resolver.

A returning visitor is matched to the session it already has: first by the
token it kept, then by its visitor id, and only then is a new session
inserted. The partial unique index on active (visitor_id, widget_key) rows
turns a lost insert race into a re-read of the winning row.
"""

from __future__ import annotations

import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Literal

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from chatdesk.config import settings
from chatdesk.errors import RateLimitError, SessionAuthError
from chatdesk.logging import get_logger
from chatdesk.middleware.widget_rate_limit import check_session_creation_rate
from chatdesk.models import DeviceType, WidgetSession, WidgetSettings
from chatdesk.services.common import as_utc, now
from chatdesk.services.observability import SESSION_RESOLVE_TIME, SESSIONS_RESOLVED
from chatdesk.services.widget_settings import widget_settings
from chatdesk.telemetry import get_tracer

logger = get_logger(__name__)

ResolveOutcome = Literal["token", "visitor", "created", "race_lost"]

_TABLET_PATTERN = re.compile(r"tablet|ipad", re.IGNORECASE)
_MOBILE_PATTERN = re.compile(r"mobile|android|iphone|ipad|ipod", re.IGNORECASE)


@dataclass(frozen=True)
class SessionResolution:
    session: WidgetSession
    outcome: ResolveOutcome
    config: WidgetSettings


def detect_device_type(user_agent: str | None) -> DeviceType:
    if not user_agent:
        return DeviceType.desktop
    if _TABLET_PATTERN.search(user_agent):
        return DeviceType.tablet
    if _MOBILE_PATTERN.search(user_agent):
        return DeviceType.mobile
    return DeviceType.desktop


def _generate_session_token() -> str:
    return secrets.token_urlsafe(48)


def _session_ttl() -> timedelta:
    return timedelta(hours=settings.widget_session_ttl_hours)


def _is_live(session: WidgetSession, at: datetime) -> bool:
    return bool(session.is_active) and as_utc(session.expires_at) > at


def _touch(session: WidgetSession, at: datetime, current_url: str | None, user_data: dict | None) -> None:
    """Refresh activity and slide the expiry window."""
    session.last_seen_at = at
    session.expires_at = at + _session_ttl()
    if current_url:
        session.current_url = current_url[:2048]
    if user_data:
        merged = dict(session.user_data or {})
        merged.update(user_data)
        session.user_data = merged


def _find_by_token(db: Session, widget_key: str, token: str) -> WidgetSession | None:
    return (
        db.query(WidgetSession)
        .filter(WidgetSession.session_token == token)
        .filter(WidgetSession.widget_key == widget_key)
        .filter(WidgetSession.is_active.is_(True))
        .first()
    )


def _find_live_for_visitor(db: Session, widget_key: str, visitor_id: str, at: datetime) -> WidgetSession | None:
    return (
        db.query(WidgetSession)
        .filter(WidgetSession.visitor_id == visitor_id)
        .filter(WidgetSession.widget_key == widget_key)
        .filter(WidgetSession.is_active.is_(True))
        .filter(WidgetSession.expires_at > at)
        .order_by(WidgetSession.created_at.desc())
        .first()
    )


def _find_active_for_visitor(db: Session, widget_key: str, visitor_id: str) -> WidgetSession | None:
    return (
        db.query(WidgetSession)
        .filter(WidgetSession.visitor_id == visitor_id)
        .filter(WidgetSession.widget_key == widget_key)
        .filter(WidgetSession.is_active.is_(True))
        .first()
    )


def _deactivate_expired(db: Session, widget_key: str, visitor_id: str, at: datetime) -> int:
    return (
        db.query(WidgetSession)
        .filter(WidgetSession.visitor_id == visitor_id)
        .filter(WidgetSession.widget_key == widget_key)
        .filter(WidgetSession.is_active.is_(True))
        .filter(WidgetSession.expires_at <= at)
        .update({WidgetSession.is_active: False}, synchronize_session=False)
    )


class SessionResolver:
    """Find-or-create for widget sessions."""

    @staticmethod
    def resolve(
        db: Session,
        widget_key: str,
        visitor_id: str | None,
        existing_session_token: str | None = None,
        *,
        origin: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        referrer: str | None = None,
        current_url: str | None = None,
        user_data: dict | None = None,
    ) -> SessionResolution:
        """Return the visitor's live session, creating one only when none exists.

        Raises ``WidgetUnavailableError`` / ``OriginNotAllowedError`` before any
        lookup, and ``RateLimitError`` when a new session would exceed the
        per-IP allowance.
        """
        config = widget_settings.require_enabled(db, widget_key)
        widget_settings.require_origin(config, origin)

        tracer = get_tracer(__name__)
        with tracer.start_as_current_span(
            "widget_session.resolve",
            attributes={"widget.key": widget_key},
        ) as span, SESSION_RESOLVE_TIME.time():
            session, outcome = SessionResolver._resolve(
                db,
                config,
                visitor_id,
                existing_session_token,
                ip_address=ip_address,
                user_agent=user_agent,
                referrer=referrer,
                current_url=current_url,
                user_data=user_data,
            )
            span.set_attribute("widget.session_outcome", outcome)

        SESSIONS_RESOLVED.labels(outcome=outcome).inc()
        logger.info(
            "widget_session_resolved session_id=%s outcome=%s widget_key=%s visitor_id=%s",
            session.id,
            outcome,
            widget_key,
            visitor_id,
        )
        return SessionResolution(session=session, outcome=outcome, config=config)

    @staticmethod
    def _resolve(
        db: Session,
        config: WidgetSettings,
        visitor_id: str | None,
        token: str | None,
        *,
        ip_address: str | None,
        user_agent: str | None,
        referrer: str | None,
        current_url: str | None,
        user_data: dict | None,
    ) -> tuple[WidgetSession, ResolveOutcome]:
        at = now()
        widget_key = config.widget_key

        # 1. Token the client kept
        if token:
            session = _find_by_token(db, widget_key, token)
            if session and _is_live(session, at):
                _touch(session, at, current_url, user_data)
                db.commit()
                db.refresh(session)
                return session, "token"

        # 2. Same visitor id, token lost
        if visitor_id:
            session = _find_live_for_visitor(db, widget_key, visitor_id, at)
            if session:
                _touch(session, at, current_url, user_data)
                db.commit()
                db.refresh(session)
                return session, "visitor"

        # 3. New session
        allowed, _remaining = check_session_creation_rate(
            ip_address or "unknown",
            limit=config.rate_limit_sessions_per_ip or 20,
        )
        if not allowed:
            logger.warning("widget_session_rate_limited ip=%s widget_key=%s", ip_address, widget_key)
            raise RateLimitError("Too many session requests. Please try again later.")

        if visitor_id:
            expired = _deactivate_expired(db, widget_key, visitor_id, at)
            if expired:
                logger.info(
                    "widget_sessions_expired widget_key=%s visitor_id=%s count=%s",
                    widget_key,
                    visitor_id,
                    expired,
                )

        session = WidgetSession(
            organization_id=config.organization_id,
            widget_key=widget_key,
            session_token=_generate_session_token(),
            visitor_id=visitor_id,
            device_type=detect_device_type(user_agent),
            ip_address=ip_address[:45] if ip_address else None,
            user_agent=user_agent[:512] if user_agent else None,
            referrer=referrer[:2048] if referrer else None,
            current_url=current_url[:2048] if current_url else None,
            user_data=dict(user_data) if user_data else None,
            is_active=True,
            last_seen_at=at,
            created_at=at,
            expires_at=at + _session_ttl(),
        )
        try:
            with db.begin_nested():
                db.add(session)
                db.flush()
        except IntegrityError:
            # A concurrent resolve inserted the active row first.
            winner = _find_active_for_visitor(db, widget_key, visitor_id) if visitor_id else None
            if winner is None:
                db.rollback()
                raise
            _touch(winner, at, current_url, user_data)
            db.commit()
            db.refresh(winner)
            return winner, "race_lost"

        db.commit()
        db.refresh(session)
        return session, "created"

    @staticmethod
    def get_active_session(db: Session, token: str | None) -> WidgetSession:
        """Session for a header token; absent, inactive or expired tokens raise 401."""
        if not token:
            raise SessionAuthError("Session token is required")
        session = (
            db.query(WidgetSession)
            .filter(WidgetSession.session_token == token)
            .filter(WidgetSession.is_active.is_(True))
            .first()
        )
        if not session or not _is_live(session, now()):
            raise SessionAuthError()
        return session

    @staticmethod
    def refresh_activity(db: Session, session: WidgetSession) -> None:
        """Update the last_seen_at timestamp."""
        session.last_seen_at = now()
        db.commit()


# Singleton instance
widget_sessions = SessionResolver()


def resolve(db: Session, widget_key: str, visitor_id: str | None, existing_session_token: str | None = None, **kwargs):
    return widget_sessions.resolve(db, widget_key, visitor_id, existing_session_token, **kwargs)


def get_active_session(db: Session, token: str | None) -> WidgetSession:
    return widget_sessions.get_active_session(db, token)
