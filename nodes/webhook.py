"""
Webhook node — calls an external HTTP endpoint and records the outcome.

``data.webhook = {url, method?, headers?, body?, timeout?, retryCount?}``

URL, headers and body are rendered first. Attempts = ``retryCount + 1``;
the wait before attempt ``n`` (n ≥ 2) is ``2^(n-2)`` seconds. Responses
below 500 are accepted as they are; 5xx responses and transport failures
are retried. The flow always advances, whatever happened.

Session variables written (prefix ``webhook_<nodeId>_``):
    status, response, duration         on an accepted response
    error_status, error_response       last attempt answered 5xx
    error_type, error_message          timeout | network | config
    critical_error                     unexpected failure
"""
from __future__ import annotations

import json
import math
import time
import structlog
from typing import Any, Optional

import httpx
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt

from models.schemas import NodeType
from nodes.base import ExecutionContext, NodeHandler, NodeResult

logger = structlog.get_logger()


class UpstreamServerError(Exception):
    """The endpoint answered with a 5xx status."""

    def __init__(self, response: httpx.Response):
        self.response = response
        super().__init__(f"Upstream returned {response.status_code}")


class WebhookConfigError(ValueError):
    pass


def backoff_seconds(retry_state: RetryCallState) -> float:
    """Wait before the next attempt: 2^(next_attempt - 2) seconds."""
    return float(2 ** (retry_state.attempt_number - 1))


def _validate_url(url: str) -> httpx.URL:
    if not url:
        raise WebhookConfigError("Webhook URL is empty")
    try:
        parsed = httpx.URL(url)
    except httpx.InvalidURL as e:
        raise WebhookConfigError(f"Invalid webhook URL: {e}") from e
    if parsed.scheme not in ("http", "https") or not parsed.host:
        raise WebhookConfigError(f"Invalid webhook URL: '{url}'")
    return parsed


def _number(config: dict[str, Any], key: str, default: float) -> float:
    raw = config.get(key)
    if raw is None or raw == "":
        return default
    if isinstance(raw, bool):
        raise WebhookConfigError(f"Webhook {key} must be a number, got {raw!r}")
    try:
        value = float(raw)
    except (TypeError, ValueError):
        raise WebhookConfigError(f"Webhook {key} must be a number, got {raw!r}") from None
    if not math.isfinite(value) or value < 0:
        raise WebhookConfigError(f"Webhook {key} must be a non-negative number, got {raw!r}")
    return value


def _pairs(headers: Any) -> list[tuple[Any, Any]]:
    if isinstance(headers, dict):
        return list(headers.items())
    if isinstance(headers, list):
        return [(h.get("key"), h.get("value")) for h in headers if isinstance(h, dict)]
    return []


def _body_text(response: httpx.Response) -> str:
    try:
        return json.dumps(response.json(), ensure_ascii=False)
    except ValueError:
        return response.text


class WebhookHandler(NodeHandler):

    node_type = NodeType.WEBHOOK

    def _build_request(self, ctx: ExecutionContext, config: dict[str, Any]) -> dict[str, Any]:
        settings = self.deps.settings.webhook
        url = _validate_url(ctx.render(config.get("url") or "").strip())

        headers = {"Content-Type": "application/json", "User-Agent": settings.user_agent}
        for key, value in _pairs(config.get("headers")):
            key = ctx.render(key).strip() if key else ""
            value = ctx.render(value) if value is not None else ""
            if key and value:
                headers[key] = value

        request: dict[str, Any] = {
            "method": (config.get("method") or "POST").upper(),
            "url": url,
            "headers": headers,
            "timeout": _number(config, "timeout", 0.0) or settings.default_timeout,
            "attempts": int(_number(config, "retryCount", 0)) + 1,
        }

        body = config.get("body")
        if isinstance(body, (dict, list)):
            request["content"] = json.dumps(ctx.render_value(body))
        elif isinstance(body, str) and body.strip():
            rendered = ctx.render(body)
            try:
                request["content"] = json.dumps(json.loads(rendered))
            except ValueError:
                request["content"] = rendered
                headers["Content-Type"] = "text/plain"
        return request

    async def _send_once(self, request: dict[str, Any]) -> httpx.Response:
        response = await self.deps.http_client.request(
            request["method"], request["url"],
            headers=request["headers"],
            content=request.get("content"),
            timeout=request["timeout"],
        )
        if response.status_code >= 500:
            raise UpstreamServerError(response)
        return response

    async def execute(self, ctx: ExecutionContext) -> NodeResult:
        prefix = f"webhook_{ctx.node.id}"
        config = ctx.data.get("webhook")
        if not config:
            logger.warning("webhook_config_missing", node_id=ctx.node.id)
            ctx.set_var(f"{prefix}_error_type", "config")
            ctx.set_var(f"{prefix}_error_message", "Webhook configuration not found")
            return NodeResult.advance()

        try:
            request = self._build_request(ctx, config)
        except WebhookConfigError as e:
            logger.warning("webhook_config_invalid", node_id=ctx.node.id, error=str(e))
            ctx.set_var(f"{prefix}_error_type", "config")
            ctx.set_var(f"{prefix}_error_message", str(e))
            return NodeResult.advance()

        attempts = request["attempts"]
        started = time.monotonic()
        try:
            response = await self._call_with_retries(ctx, request, attempts)
        except UpstreamServerError as e:
            ctx.set_var(f"{prefix}_error_status", e.response.status_code)
            ctx.set_var(f"{prefix}_error_response", self._truncate(_body_text(e.response)))
            logger.error("webhook_failed", node_id=ctx.node.id, status=e.response.status_code, attempts=attempts)
        except httpx.TimeoutException as e:
            ctx.set_var(f"{prefix}_error_type", "timeout")
            ctx.set_var(f"{prefix}_error_message", str(e) or "Request timed out")
            logger.error("webhook_timeout", node_id=ctx.node.id, attempts=attempts)
        except httpx.TransportError as e:
            ctx.set_var(f"{prefix}_error_type", "network")
            ctx.set_var(f"{prefix}_error_message", str(e))
            logger.error("webhook_network_error", node_id=ctx.node.id, attempts=attempts, error=str(e))
        except Exception as e:
            ctx.set_var(f"{prefix}_critical_error", str(e))
            logger.exception("webhook_critical_error", node_id=ctx.node.id)
        else:
            duration_ms = int((time.monotonic() - started) * 1000)
            ctx.set_var(f"{prefix}_status", response.status_code)
            ctx.set_var(f"{prefix}_response", self._truncate(_body_text(response)))
            ctx.set_var(f"{prefix}_duration", duration_ms)
            logger.info("webhook_completed", node_id=ctx.node.id, status=response.status_code,
                        duration_ms=duration_ms)
        return NodeResult.advance()

    async def _call_with_retries(self, ctx: ExecutionContext, request: dict[str, Any],
                                 attempts: int) -> Optional[httpx.Response]:
        def log_retry(retry_state: RetryCallState) -> None:
            logger.warning("webhook_attempt_failed", node_id=ctx.node.id,
                           attempt=retry_state.attempt_number, max_attempts=attempts,
                           error=str(retry_state.outcome.exception()))

        retrying = AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=backoff_seconds,
            retry=retry_if_exception_type((UpstreamServerError, httpx.TransportError)),
            sleep=self.deps.sleep,
            before_sleep=log_retry,
            reraise=True,
        )
        response = None
        async for attempt in retrying:
            with attempt:
                response = await self._send_once(request)
        return response

    def _truncate(self, text: str) -> str:
        limit = self.deps.settings.webhook.max_response_chars
        return text if len(text) <= limit else text[:limit]
