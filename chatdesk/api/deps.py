"""Request dependencies: widget session tokens and staff bearer tokens."""

from __future__ import annotations

from fastapi import Depends, Header
from jose import JWTError, jwt
from sqlalchemy.orm import Session

from chatdesk.config import settings
from chatdesk.db import get_db
from chatdesk.errors import ChatDeskError, StaffAuthError
from chatdesk.models import User, UserRole, WidgetSession
from chatdesk.services.common import coerce_uuid
from chatdesk.services.sessions import widget_sessions

SESSION_TOKEN_HEADER = "X-Session-Token"


def _extract_bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


def decode_access_token(token: str) -> dict:
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError as exc:
        raise StaffAuthError() from exc


def get_widget_session(
    x_session_token: str | None = Header(default=None, alias=SESSION_TOKEN_HEADER),
    db: Session = Depends(get_db),
) -> WidgetSession:
    """Active widget session for the ``X-Session-Token`` header (401 otherwise)."""
    return widget_sessions.get_active_session(db, x_session_token)


def get_current_staff(
    authorization: str | None = Header(default=None),
    db: Session = Depends(get_db),
) -> User:
    """Staff user named by the bearer token's ``sub`` claim."""
    token = _extract_bearer_token(authorization)
    if not token:
        raise StaffAuthError()
    payload = decode_access_token(token)
    subject = payload.get("sub")
    if not subject:
        raise StaffAuthError()
    try:
        user_id = coerce_uuid(subject, field="sub")
    except ChatDeskError as exc:
        raise StaffAuthError() from exc
    user = db.get(User, user_id)
    if not user or user.role not in (UserRole.agent, UserRole.org_admin):
        raise StaffAuthError()
    return user
