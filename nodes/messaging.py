"""Nodes that only send something to the user: Message, File, Form."""
from __future__ import annotations

import structlog

from channels.base import GatewayError
from models.schemas import HistoryMessage, MessageDirection, NodeType
from nodes.base import ExecutionContext, NodeHandler, NodeResult

logger = structlog.get_logger()


class MessageHandler(NodeHandler):
    """Sends ``data.text`` (rendered) with ``data.parseMode`` (default HTML)."""

    node_type = NodeType.MESSAGE

    async def execute(self, ctx: ExecutionContext) -> NodeResult:
        text = ctx.render(ctx.data.get("text") or ctx.data.get("messageText") or "")
        if not text.strip():
            logger.warning("message_text_missing", node_id=ctx.node.id)
            return NodeResult.advance()
        try:
            await self.send_and_record(ctx, text, {"parse_mode": ctx.data.get("parseMode") or "HTML"})
        except GatewayError as e:
            logger.error("message_send_failed", node_id=ctx.node.id, error=str(e))
            ctx.set_var(f"message_{ctx.node.id}_error", str(e))
        return NodeResult.advance()


class FileHandler(NodeHandler):
    """
    ``data.file.type``:
      upload   — ask the user for a file (``accept``, ``maxSize`` in MB)
      send     — send the document at ``url`` with ``filename`` as caption
      download — same as send
    """

    node_type = NodeType.FILE

    async def execute(self, ctx: ExecutionContext) -> NodeResult:
        config = ctx.data.get("file")
        if not config:
            logger.warning("file_config_missing", node_id=ctx.node.id)
            return NodeResult.advance()

        kind = config.get("type")
        try:
            if kind == "upload":
                accept = ", ".join(config.get("accept") or []) or "any"
                max_size = config.get("maxSize")
                prompt = f"📁 Please upload a file.\nAllowed types: {accept}"
                if max_size:
                    prompt += f"\nMaximum size: {max_size} MB"
                await self.send_and_record(ctx, prompt)
            elif kind in ("send", "download"):
                url = ctx.render(config.get("url") or "")
                if url:
                    await self._send_document(ctx, url, ctx.render(config.get("filename") or "") or "file")
                else:
                    await self.send_and_record(ctx, "📁 File not found")
            else:
                await self.send_and_record(ctx, "📁 Unknown file type")
        except GatewayError as e:
            logger.error("file_send_failed", node_id=ctx.node.id, error=str(e))
            ctx.set_var(f"file_{ctx.node.id}_error", str(e))
        return NodeResult.advance()

    async def _send_document(self, ctx: ExecutionContext, url: str, caption: str) -> None:
        message_id = await self.deps.gateway.send_document(ctx.bot.token, ctx.chat_id, url, {"caption": caption})
        await self.deps.history.record_message(HistoryMessage(
            bot_id=ctx.bot.id,
            chat_id=ctx.chat_id,
            user_id=ctx.session.user_id,
            chat_type=ctx.event.chat.type,
            direction=MessageDirection.OUTBOUND,
            text=caption,
            message_id=message_id,
            metadata={"node_id": ctx.node.id, "document": url},
        ))


class FormHandler(NodeHandler):
    """Lists ``data.form.fields`` (required ones starred) and offers a submit button."""

    node_type = NodeType.FORM

    async def execute(self, ctx: ExecutionContext) -> NodeResult:
        config = ctx.data.get("form")
        if not config:
            logger.warning("form_config_missing", node_id=ctx.node.id)
            return NodeResult.advance()

        submit_text = ctx.render(config.get("submitText") or "Submit")
        lines = [
            f"{ctx.render(f.get('label', ''))}{' *' if f.get('required') else ''}"
            for f in config.get("fields") or []
        ]
        try:
            await self.send_and_record(ctx, "📝 " + "\n".join(lines) + f"\n\n{submit_text}")
            await self.send_and_record(ctx, "Press the button to submit the form:", {
                "reply_markup": {"inline_keyboard": [[
                    {"text": submit_text, "callback_data": f"form_submit_{ctx.node.id}"},
                ]]},
            })
        except GatewayError as e:
            logger.error("form_send_failed", node_id=ctx.node.id, error=str(e))
            ctx.set_var(f"form_{ctx.node.id}_error", str(e))
        return NodeResult.advance()
