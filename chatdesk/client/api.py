"""Async HTTP client for the public widget API."""

from __future__ import annotations

from typing import Any

import httpx

from chatdesk.logging import get_logger

logger = get_logger(__name__)

SESSION_TOKEN_HEADER = "X-Session-Token"


class WidgetTransportError(Exception):
    """Widget API call failed (transport error or non-2xx answer)."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        code: str | None = None,
        payload: dict | None = None,
    ):
        self.message = message
        self.status_code = status_code
        self.code = code
        self.payload = payload or {}
        super().__init__(message)

    @property
    def retryable(self) -> bool:
        return self.status_code is None or self.status_code == 429 or self.status_code >= 500


class WidgetApiClient:
    """Client for the ``/api/widget`` endpoints."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 15,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers={"Content-Type": "application/json"},
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        method: str,
        path: str,
        *,
        token: str | None = None,
        json_data: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        client = self._get_client()
        headers = {SESSION_TOKEN_HEADER: token} if token else None
        try:
            response = await client.request(method, f"/api/widget{path}", json=json_data, headers=headers)
        except httpx.RequestError as e:
            logger.warning("widget_api_request_failed path=%s error=%s", path, e)
            raise WidgetTransportError(f"Request failed: {e}") from e

        if response.status_code >= 400:
            try:
                body = response.json()
            except ValueError:
                body = {}
            if not isinstance(body, dict):
                body = {}
            logger.warning(
                "widget_api_error path=%s status=%s code=%s",
                path,
                response.status_code,
                body.get("error"),
            )
            raise WidgetTransportError(
                body.get("detail") or f"API error: {response.status_code}",
                status_code=response.status_code,
                code=body.get("error"),
                payload=body,
            )
        return response.json()

    async def init(
        self,
        widget_key: str,
        visitor_id: str,
        existing_session_token: str | None = None,
        user_data: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {"widgetKey": widget_key, "visitorId": visitor_id}
        if existing_session_token:
            body["existingSessionToken"] = existing_session_token
        if user_data:
            body["userData"] = user_data
        return await self._request("POST", "/init", json_data=body)

    async def list_departments(self, token: str) -> list[dict[str, Any]]:
        data = await self._request("GET", "/departments", token=token)
        return data.get("departments", [])

    async def create_conversation(
        self,
        token: str,
        department_id: str | None = None,
        pre_chat_data: dict[str, Any] | None = None,
        customer_data: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {"sessionToken": token, "preChatData": pre_chat_data or {}}
        if department_id:
            body["departmentId"] = department_id
        if customer_data:
            body["customerData"] = customer_data
        data = await self._request("POST", "/conversations", token=token, json_data=body)
        return data["conversation"]

    async def get_conversation(self, token: str, conversation_id: str) -> dict[str, Any]:
        data = await self._request("GET", f"/conversations/{conversation_id}", token=token)
        return data["conversation"]

    async def list_messages(self, token: str, conversation_id: str) -> list[dict[str, Any]]:
        data = await self._request("GET", f"/conversations/{conversation_id}/messages", token=token)
        return data.get("messages", [])

    async def send_message(
        self,
        token: str,
        conversation_id: str,
        content: str,
        *,
        client_message_id: str | None = None,
        message_type: str = "text",
        media: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {"content": content, "messageType": message_type}
        if client_message_id:
            body["clientMessageId"] = client_message_id
        if media:
            body.update(media)
        data = await self._request(
            "POST",
            f"/conversations/{conversation_id}/messages",
            token=token,
            json_data=body,
        )
        return data["message"]

    async def set_typing(self, token: str, conversation_id: str, is_typing: bool) -> None:
        await self._request(
            "POST",
            f"/conversations/{conversation_id}/typing",
            token=token,
            json_data={"isTyping": is_typing},
        )

    async def get_typing(self, token: str, conversation_id: str) -> list[dict[str, Any]]:
        data = await self._request("GET", f"/conversations/{conversation_id}/typing", token=token)
        return data.get("typingIndicators", [])
