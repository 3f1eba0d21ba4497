from typing import Optional

import httpx

from app.config import settings
from app.logging_config import get_logger
from app.services.result import Result

logger = get_logger("whatsapp_service")


class WahaClient:
    """Client for the WAHA WhatsApp gateway. Failures come back as Result, never raised."""

    def __init__(
        self,
        api_url: str,
        api_key: Optional[str] = None,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["X-Api-Key"] = self.api_key
        return headers

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, headers=self._headers(), transport=self._transport)

    async def send_text(self, session: str, chat_id: str, text: str) -> Result[dict]:
        """POST /api/sendText."""
        payload = {"chatId": chat_id, "text": text, "session": session}
        try:
            async with self._client() as client:
                response = await client.post(f"{self.api_url}/api/sendText", json=payload)
        except httpx.TimeoutException as e:
            logger.warning(
                "WhatsApp delivery timed out",
                extra={"context": {"session": session, "chat_id": chat_id, "error": str(e)}},
            )
            return Result.failure(f"timeout: {e}", "delivery_failed")
        except httpx.HTTPError as e:
            logger.warning(
                "WhatsApp delivery failed",
                extra={"context": {"session": session, "chat_id": chat_id, "error": str(e)}},
            )
            return Result.failure(f"transport: {e}", "delivery_failed")

        if not response.is_success:
            logger.warning(
                "WhatsApp gateway rejected message",
                extra={
                    "context": {
                        "session": session,
                        "chat_id": chat_id,
                        "status_code": response.status_code,
                        "body": response.text[:200],
                    }
                },
            )
            return Result.failure(f"HTTP {response.status_code}", "delivery_failed")

        try:
            body = response.json()
        except ValueError:
            body = {}
        return Result.success(body if isinstance(body, dict) else {"response": body})

    async def check_health(self) -> Result[dict]:
        """GET /api/sessions. Reports session count and whether any is WORKING."""
        try:
            async with self._client() as client:
                response = await client.get(f"{self.api_url}/api/sessions")
        except httpx.HTTPError as e:
            return Result.failure(str(e), "gateway_unreachable")

        if not response.is_success:
            return Result.failure(f"HTTP {response.status_code}", "gateway_error")

        try:
            sessions = response.json()
        except ValueError:
            return Result.failure("invalid JSON", "gateway_error")
        if not isinstance(sessions, list):
            sessions = []
        working = [s.get("name") for s in sessions if isinstance(s, dict) and s.get("status") == "WORKING"]
        return Result.success({"sessions": len(sessions), "working": working})


def get_gateway_client() -> WahaClient:
    return WahaClient(
        api_url=settings.waha_api_url,
        api_key=settings.waha_api_key,
        timeout=settings.gateway_timeout_seconds,
    )
