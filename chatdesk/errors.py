"""Error taxonomy for the widget/session engine and its FastAPI handlers."""

from __future__ import annotations

from dataclasses import dataclass, field

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from chatdesk.logging import get_logger

logger = get_logger(__name__)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, PUT, DELETE, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization, X-Session-Token",
}


@dataclass(frozen=True, eq=False)
class ChatDeskError(Exception):
    code: str
    detail: str
    status_code: int = 400
    retryable: bool = False
    extra: dict = field(default_factory=dict)

    def __str__(self) -> str:
        return self.detail

    def to_http_exception(self) -> HTTPException:
        return HTTPException(status_code=self.status_code, detail=self.detail)

    def to_payload(self) -> dict:
        payload = {"error": self.code, "detail": self.detail}
        payload.update(self.extra)
        return payload


# Configuration errors: the widget cannot be served at all.


class WidgetUnavailableError(ChatDeskError):
    def __init__(self, detail: str = "Invalid widget key"):
        super().__init__(code="widget_unavailable", detail=detail, status_code=404)


class OriginNotAllowedError(ChatDeskError):
    def __init__(self, detail: str = "Domain not allowed"):
        super().__init__(code="origin_not_allowed", detail=detail, status_code=403)


# Auth / state errors.


class SessionAuthError(ChatDeskError):
    def __init__(self, detail: str = "Invalid session token"):
        super().__init__(code="invalid_session", detail=detail, status_code=401)


class StaffAuthError(ChatDeskError):
    def __init__(self, detail: str = "Unauthorized"):
        super().__init__(code="unauthorized", detail=detail, status_code=401)


class ConversationAccessError(ChatDeskError):
    def __init__(self, detail: str = "Unauthorized"):
        super().__init__(code="conversation_forbidden", detail=detail, status_code=403)


class ConversationNotFoundError(ChatDeskError):
    def __init__(self, detail: str = "Conversation not found"):
        super().__init__(code="conversation_not_found", detail=detail, status_code=404)


class ConversationClosedError(ChatDeskError):
    def __init__(self, detail: str = "Conversation is closed"):
        super().__init__(code="conversation_closed", detail=detail, status_code=409)


class InvalidTransitionError(ChatDeskError):
    def __init__(self, detail: str):
        super().__init__(code="invalid_transition", detail=detail, status_code=409)


# Validation errors.


class PrechatValidationError(ChatDeskError):
    def __init__(self, missing_field_ids: list[str]):
        super().__init__(
            code="prechat_incomplete",
            detail="Required pre-chat fields are missing",
            status_code=422,
            extra={"missingFieldIds": list(missing_field_ids)},
        )

    @property
    def missing_field_ids(self) -> list[str]:
        return list(self.extra.get("missingFieldIds", []))


class MessageValidationError(ChatDeskError):
    def __init__(self, detail: str):
        super().__init__(code="invalid_message", detail=detail, status_code=400)


class DepartmentRequiredError(ChatDeskError):
    def __init__(self, detail: str = "Department is required"):
        super().__init__(code="department_required", detail=detail, status_code=400)


class RateLimitError(ChatDeskError):
    def __init__(self, detail: str = "Too many requests. Please try again later."):
        super().__init__(code="rate_limited", detail=detail, status_code=429, retryable=True)


def as_http_exception(exc: Exception) -> HTTPException:
    if isinstance(exc, ChatDeskError):
        return exc.to_http_exception()
    if isinstance(exc, HTTPException):
        return exc
    return HTTPException(status_code=500, detail=str(exc) or "Internal server error")


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ChatDeskError)
    async def _chatdesk_error_handler(request: Request, exc: ChatDeskError):
        if exc.status_code >= 500:
            logger.error("request_failed path=%s code=%s", request.url.path, exc.code)
        else:
            logger.info(
                "request_rejected path=%s code=%s status=%s",
                request.url.path,
                exc.code,
                exc.status_code,
            )
        headers = dict(CORS_HEADERS)
        if isinstance(exc, RateLimitError):
            headers["Retry-After"] = "300"
        return JSONResponse(status_code=exc.status_code, content=exc.to_payload(), headers=headers)
