"""
Location node — asks the user to share their position and stores it.

``data.location = {requestText?, buttonText?, variableName=userLocation,
successMessage?, errorMessage?, timeout=300}``

The first visit sends a reply keyboard with a location-request button and
waits. The next event on the node is the answer. A shared location is
stored as JSON ``{latitude, longitude, timestamp}`` in ``variableName``.
Anything else gets ``errorMessage``. Either way the flow moves on. A
request older than ``timeout`` seconds is sent again.
"""
from __future__ import annotations

import json
import structlog
from datetime import datetime, timedelta
from typing import Any, Optional

from channels.base import GatewayError
from models.schemas import NodeType
from nodes.base import ExecutionContext, NodeHandler, NodeResult

logger = structlog.get_logger()

DEFAULT_REQUEST_TEXT = "Please share your location"
DEFAULT_BUTTON_TEXT = "📍 Send location"
DEFAULT_ERROR_TEXT = "Could not get your location. Please try again."


class LocationHandler(NodeHandler):

    node_type = NodeType.LOCATION

    async def _say(self, ctx: ExecutionContext, text: Optional[str], options: dict[str, Any] = None) -> bool:
        if not text:
            return True
        try:
            await self.send_and_record(ctx, ctx.render(text), options)
        except GatewayError as e:
            logger.error("location_send_failed", node_id=ctx.node.id, error=str(e))
            return False
        return True

    def _pending(self, ctx: ExecutionContext, timeout: float) -> bool:
        raw = ctx.session.get_variable(f"location_{ctx.node.id}_requested_at")
        if not raw or ctx.reached_through_transition:
            return False
        try:
            requested_at = datetime.fromisoformat(raw)
        except ValueError:
            return False
        if ctx.clock() - requested_at > timedelta(seconds=timeout):
            logger.info("location_request_expired", node_id=ctx.node.id, requested_at=raw)
            return False
        return True

    async def execute(self, ctx: ExecutionContext) -> NodeResult:
        config = ctx.data.get("location")
        if not config:
            logger.warning("location_config_missing", node_id=ctx.node.id)
            return NodeResult.advance()

        timeout = float(config.get("timeout") or 300)
        if self._pending(ctx, timeout):
            return await self._receive(ctx, config)

        markup = {
            "keyboard": [[{"text": config.get("buttonText") or DEFAULT_BUTTON_TEXT, "request_location": True}]],
            "resize_keyboard": True,
            "one_time_keyboard": True,
        }
        sent = await self._say(ctx, config.get("requestText") or DEFAULT_REQUEST_TEXT,
                               {"reply_markup": markup, "parse_mode": "HTML"})
        if not sent:
            return NodeResult.advance()
        ctx.set_var(f"location_{ctx.node.id}_requested_at", ctx.clock().isoformat())
        logger.info("location_requested", node_id=ctx.node.id, user_id=ctx.session.user_id)
        return NodeResult.wait()

    async def _receive(self, ctx: ExecutionContext, config: dict[str, Any]) -> NodeResult:
        ctx.session.variables.pop(f"location_{ctx.node.id}_requested_at", None)
        point = ctx.event.location
        if point is None:
            logger.warning("location_not_shared", node_id=ctx.node.id, user_id=ctx.session.user_id)
            await self._say(ctx, config.get("errorMessage") or DEFAULT_ERROR_TEXT)
            return NodeResult.advance()

        variable = config.get("variableName") or "userLocation"
        ctx.set_var(variable, json.dumps({
            "latitude": point.latitude,
            "longitude": point.longitude,
            "timestamp": ctx.clock().isoformat(),
        }))
        logger.info("location_received", node_id=ctx.node.id, variable=variable)
        await self._say(ctx, config.get("successMessage"))
        return NodeResult.advance()
