"""Delay node — pauses the traversal for a fixed time."""
from __future__ import annotations

import structlog

from models.schemas import NodeType
from nodes.base import ExecutionContext, NodeHandler, NodeResult

logger = structlog.get_logger()

UNIT_SECONDS = {
    "seconds": 1,
    "minutes": 60,
    "hours": 3600,
    "days": 86400,
}


class DelayHandler(NodeHandler):
    """``data.delay = {value, unit}``; the wait is capped by engine.max_inline_delay_seconds."""

    node_type = NodeType.DELAY

    async def execute(self, ctx: ExecutionContext) -> NodeResult:
        config = ctx.data.get("delay")
        if not config:
            logger.warning("delay_config_missing", node_id=ctx.node.id)
            return NodeResult.advance()

        try:
            seconds = float(config.get("value") or 0) * UNIT_SECONDS.get(config.get("unit") or "seconds", 1)
        except (TypeError, ValueError):
            logger.warning("delay_value_invalid", node_id=ctx.node.id, value=config.get("value"))
            return NodeResult.advance()

        cap = self.deps.settings.engine.max_inline_delay_seconds
        if seconds > cap:
            logger.warning("delay_capped", node_id=ctx.node.id, requested=seconds, cap=cap)
            seconds = cap
        if seconds > 0:
            await self.deps.sleep(seconds)
        return NodeResult.advance()
