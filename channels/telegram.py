"""
Telegram Gateway — Bot API client for outbound messages.

Each call is made with the sending bot's own token, so one gateway serves
every bot the engine hosts.

API Docs: https://core.telegram.org/bots/api
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from channels.base import GatewayError, MessagingGateway, RateLimitedError, TokenBucketRateLimiter
from config.settings import TelegramConfig

logger = structlog.get_logger()


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, GatewayError) and exc.retryable


class TelegramGateway(MessagingGateway):
    """Telegram Bot API messaging gateway."""

    provider = "telegram"

    def __init__(self, config: TelegramConfig = None, client: httpx.AsyncClient = None):
        self.config = config or TelegramConfig()
        self._client: Optional[httpx.AsyncClient] = client
        self._limiter = TokenBucketRateLimiter(rate=self.config.rate_per_second, burst=self.config.burst)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.config.timeout, connect=5.0),
            )
        return self._client

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(min=1, max=5),
        retry=retry_if_exception(_is_retryable),
        reraise=True,
    )
    async def _call(self, token: str, method: str, payload: dict[str, Any]) -> dict[str, Any]:
        if not token:
            raise GatewayError("Bot token is not configured", self.provider)
        if not await self._limiter.acquire():
            raise RateLimitedError(self.provider)

        client = await self._get_client()
        url = f"{self.config.api_base}/bot{token}/{method}"
        try:
            resp = await client.post(url, json=payload)
        except httpx.HTTPError as e:
            logger.warning("telegram_transport_error", method=method, error=str(e))
            raise GatewayError(str(e), self.provider, retryable=True) from e

        if resp.status_code == 429 or resp.status_code >= 500:
            logger.warning("telegram_api_unavailable", method=method, status=resp.status_code)
            raise GatewayError(
                f"Telegram API returned {resp.status_code}", self.provider,
                retryable=True, status_code=resp.status_code,
            )

        try:
            body = resp.json() if resp.content else {}
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        if resp.status_code >= 400 or not body.get("ok", False):
            logger.error("telegram_api_error", method=method, status=resp.status_code,
                         description=body.get("description", resp.text[:300]))
            raise GatewayError(
                body.get("description", f"Telegram API returned {resp.status_code}"),
                self.provider, status_code=resp.status_code,
            )
        result = body.get("result")
        return result if isinstance(result, dict) else {}

    @staticmethod
    def _message_id(result: dict[str, Any]) -> Optional[str]:
        message_id = result.get("message_id")
        return str(message_id) if message_id is not None else None

    async def send_text(self, credential: str, chat_id: str, text: str,
                        options: dict[str, Any] = None) -> Optional[str]:
        payload = {"chat_id": chat_id, "text": text, **(options or {})}
        result = await self._call(credential, "sendMessage", payload)
        return self._message_id(result)

    async def send_photo(self, credential: str, chat_id: str, photo: str,
                         options: dict[str, Any] = None) -> Optional[str]:
        payload = {"chat_id": chat_id, "photo": photo, **(options or {})}
        result = await self._call(credential, "sendPhoto", payload)
        return self._message_id(result)

    async def send_document(self, credential: str, chat_id: str, document: str,
                            options: dict[str, Any] = None) -> Optional[str]:
        payload = {"chat_id": chat_id, "document": document, **(options or {})}
        result = await self._call(credential, "sendDocument", payload)
        return self._message_id(result)

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
