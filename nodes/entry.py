"""Entry and exit nodes: Start, New-Message, End."""
from __future__ import annotations

import structlog

from models.schemas import ContentType, NodeType
from nodes.base import ExecutionContext, NodeHandler, NodeResult

logger = structlog.get_logger()


class StartHandler(NodeHandler):
    """Proceeds only for the configured start command."""

    node_type = NodeType.START

    async def execute(self, ctx: ExecutionContext) -> NodeResult:
        text = (ctx.event.text or "").strip()
        if text != self.deps.settings.engine.start_command:
            logger.debug("start_ignored", node_id=ctx.node.id, text=text)
            return NodeResult.wait()
        return NodeResult.advance()


class NewMessageHandler(NodeHandler):
    """
    Trigger node gated on the inbound message.

    ``data.newMessage`` may hold ``text`` (exact match, case-insensitive
    unless ``caseSensitive``) and ``contentType``. Reached from another
    node, it parks the flow here until the next message arrives.
    """

    node_type = NodeType.NEW_MESSAGE

    @staticmethod
    def matches(data: dict, event) -> bool:
        config = data.get("newMessage") or {}
        expected = config.get("text") or ""
        if expected.strip():
            actual = event.text or ""
            if not config.get("caseSensitive"):
                expected, actual = expected.lower(), actual.lower()
            if actual != expected:
                return False
        content_type = config.get("contentType")
        if content_type and content_type != ContentType.TEXT.value:
            if event.content_type.value != content_type:
                return False
        return True

    async def execute(self, ctx: ExecutionContext) -> NodeResult:
        if "newMessage" not in ctx.data:
            logger.warning("new_message_config_missing", node_id=ctx.node.id)
            return NodeResult.wait()
        if ctx.reached_through_transition:
            return NodeResult.wait()
        if not self.matches(ctx.data, ctx.event):
            logger.debug("new_message_not_matched", node_id=ctx.node.id)
            return NodeResult.wait()
        return NodeResult.advance()


class EndHandler(NodeHandler):

    node_type = NodeType.END

    async def execute(self, ctx: ExecutionContext) -> NodeResult:
        logger.info("flow_ended", bot_id=ctx.bot.id, user_id=ctx.session.user_id, node_id=ctx.node.id)
        return NodeResult.end()
