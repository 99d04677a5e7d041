"""
Broadcast node — sends one message to a resolved set of chats.

Recipient strategies (``data.broadcast.recipientType``):
    all              every chat seen in the bot's message history (optional chatType)
    specific         ``specificUsers`` list
    groups           history chats of type chatType, or any group/supergroup/channel
    specific_groups  ``specificGroups`` list
    activity         history chats whose last message is after/before ``activityDate``

Blank ids and internal ``system_`` chats are never addressed. Sends run on
a bounded pool of workers; each worker pauses ``send_delay_ms`` after every
send. A failed send only counts against that recipient.
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import datetime, timezone
from typing import Any, Optional

from database.store_base import is_addressable_chat
from models.schemas import NodeType
from nodes.base import ExecutionContext, NodeHandler, NodeResult

logger = structlog.get_logger()

GROUP_CHAT_TYPES = ("group", "supergroup", "channel")


def _parse_date(raw: str) -> datetime:
    value = datetime.fromisoformat(raw.strip().replace("Z", "+00:00"))
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


class BroadcastHandler(NodeHandler):

    node_type = NodeType.BROADCAST

    async def resolve_recipients(self, ctx: ExecutionContext, config: dict[str, Any]) -> list[str]:
        history = self.deps.history
        kind = config.get("recipientType") or "all"
        chat_type = config.get("chatType") or None

        if kind == "all":
            ids = await history.distinct_chat_ids(ctx.bot.id, [chat_type] if chat_type else None)
        elif kind == "specific":
            ids = [str(c) for c in config.get("specificUsers") or [] if c is not None]
        elif kind == "groups":
            ids = await history.distinct_chat_ids(ctx.bot.id, [chat_type] if chat_type else GROUP_CHAT_TYPES)
        elif kind == "specific_groups":
            ids = [str(c) for c in config.get("specificGroups") or [] if c is not None]
        elif kind == "activity":
            if config.get("activityDate"):
                ids = await history.chat_ids_by_activity(
                    ctx.bot.id,
                    _parse_date(config["activityDate"]),
                    after=config.get("activityType") == "after",
                    chat_type=chat_type,
                )
            else:
                ids = await history.distinct_chat_ids(ctx.bot.id, [chat_type] if chat_type else None)
        else:
            raise ValueError(f"Unknown recipient type '{kind}'")

        seen: dict[str, None] = {}
        for chat_id in ids:
            if is_addressable_chat(chat_id):
                seen.setdefault(chat_id.strip(), None)
        return list(seen)

    @staticmethod
    def _markup(ctx: ExecutionContext, buttons: list[dict[str, Any]]) -> Optional[dict[str, Any]]:
        rows = []
        for button in buttons or []:
            if not isinstance(button, dict) or not button.get("text"):
                continue
            item: dict[str, Any] = {"text": ctx.render(button["text"])}
            if button.get("webApp"):
                item["web_app"] = {"url": ctx.render(button["webApp"])}
            elif button.get("url"):
                item["url"] = ctx.render(button["url"])
            elif button.get("callbackData"):
                item["callback_data"] = ctx.render(button["callbackData"])
            rows.append([item])
        return {"inline_keyboard": rows} if rows else None

    async def _deliver(self, ctx: ExecutionContext, recipients: list[str], text: str,
                       image: str, markup: Optional[dict[str, Any]]) -> tuple[int, int]:
        settings = self.deps.settings.broadcast
        delay = settings.send_delay_ms / 1000.0
        queue: asyncio.Queue[str] = asyncio.Queue()
        for chat_id in recipients:
            queue.put_nowait(chat_id)
        counts = {"sent": 0, "failed": 0}

        async def send_one(chat_id: str) -> Optional[str]:
            options: dict[str, Any] = {}
            if markup:
                options["reply_markup"] = markup
            if image:
                if text:
                    options.update(caption=text, parse_mode="HTML")
                return await self.deps.gateway.send_photo(ctx.bot.token, chat_id, image, options)
            if text:
                options["parse_mode"] = "HTML"
                return await self.deps.gateway.send_text(ctx.bot.token, chat_id, text, options)
            return None

        async def worker():
            while True:
                try:
                    chat_id = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                try:
                    result = await send_one(chat_id)
                except Exception as e:
                    result = None
                    logger.warning("broadcast_send_failed", node_id=ctx.node.id, chat_id=chat_id, error=str(e))
                counts["sent" if result else "failed"] += 1
                await self.deps.sleep(delay)

        workers = max(1, min(settings.concurrency, len(recipients)))
        await asyncio.gather(*(worker() for _ in range(workers)))
        return counts["sent"], counts["failed"]

    async def execute(self, ctx: ExecutionContext) -> NodeResult:
        prefix = f"broadcast_{ctx.node.id}"
        config = ctx.data.get("broadcast")
        if not config:
            logger.warning("broadcast_config_missing", node_id=ctx.node.id)
            return NodeResult.advance()

        started = ctx.clock()
        text = ctx.render(config.get("text") or "")
        try:
            recipients = await self.resolve_recipients(ctx, config)
            sent, failed = await self._deliver(
                ctx, recipients, text, ctx.render(config.get("image") or ""),
                self._markup(ctx, config.get("buttons")),
            )
        except Exception as e:
            logger.error("broadcast_failed", node_id=ctx.node.id, error=str(e))
            ctx.set_var(f"{prefix}_status", "failed")
            ctx.set_var(f"{prefix}_error", str(e))
            return NodeResult.advance()

        status = "success" if failed == 0 else ("partial" if sent > 0 else "failed")
        ctx.set_var(f"{prefix}_text", config.get("text") or "")
        ctx.set_var(f"{prefix}_sent_count", sent)
        ctx.set_var(f"{prefix}_failed_count", failed)
        ctx.set_var(f"{prefix}_total_recipients", len(recipients))
        ctx.set_var(f"{prefix}_status", status)
        ctx.set_var(f"{prefix}_started_at", started.isoformat())
        ctx.set_var(f"{prefix}_completed_at", ctx.clock().isoformat())
        ctx.set_var(f"{prefix}_recipient_type", config.get("recipientType") or "all")
        logger.info("broadcast_completed", node_id=ctx.node.id, recipients=len(recipients),
                    sent=sent, failed=failed, status=status)
        return NodeResult.advance()
