"""
Keyboard node — sends a message with buttons and routes on the press.

Buttons are rows of ``{text, callbackData?, url?, webApp?}``; a flat
legacy list becomes one button per row. Inline keyboards answer with
callbacks and are resolved by callback data; reply keyboards answer with
a plain message equal to the button text. Either way the pressed button
``i`` leaves through output ``button-{i}``.

A callback is only accepted when it comes from the message this node
sent last (``keyboard_<id>_sent_message_id``). Callbacks from older or
foreign keyboards re-send this keyboard instead of firing a button.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

from channels.base import GatewayError
from models.schemas import NodeType
from nodes.base import ExecutionContext, NodeHandler, NodeResult

logger = structlog.get_logger()


def normalize_buttons(buttons: Any) -> list[list[dict[str, Any]]]:
    """Accept rows of buttons or a legacy flat list (one button per row)."""
    if not buttons:
        return []
    if all(isinstance(b, list) for b in buttons):
        return [list(row) for row in buttons]
    return [[b] for b in buttons if isinstance(b, dict)]


def callback_token(button: dict[str, Any]) -> Optional[str]:
    """The callback data an inline button carries once sent, or None for link buttons."""
    if button.get("callbackData"):
        return button["callbackData"]
    if button.get("url") or button.get("webApp"):
        return None
    return button.get("text")


def needs_callback(buttons: list[dict[str, Any]]) -> bool:
    """True when at least one button can produce a callback."""
    return any(b.get("callbackData") or (not b.get("url") and not b.get("webApp")) for b in buttons)


class KeyboardHandler(NodeHandler):

    node_type = NodeType.KEYBOARD

    def _render_rows(self, ctx: ExecutionContext) -> list[list[dict[str, Any]]]:
        rows = []
        for row in normalize_buttons(ctx.data.get("buttons")):
            rendered = []
            for button in row:
                if not isinstance(button, dict) or not button.get("text"):
                    continue
                rendered.append({
                    "text": ctx.render(button["text"]),
                    "callbackData": ctx.render(button["callbackData"]) if button.get("callbackData") else None,
                    "url": ctx.render(button["url"]) if button.get("url") else None,
                    "webApp": ctx.render(button["webApp"]) if button.get("webApp") else None,
                })
            if rendered:
                rows.append(rendered)
        return rows

    @staticmethod
    def _markup(ctx: ExecutionContext, rows: list[list[dict[str, Any]]], inline: bool) -> dict[str, Any]:
        if inline:
            keyboard = []
            for row in rows:
                out = []
                for b in row:
                    item: dict[str, Any] = {"text": b["text"]}
                    if b["callbackData"]:
                        item["callback_data"] = b["callbackData"]
                    elif b["url"]:
                        item["url"] = b["url"]
                    elif b["webApp"]:
                        item["web_app"] = {"url": b["webApp"]}
                    else:
                        item["callback_data"] = b["text"]
                    out.append(item)
                keyboard.append(out)
            return {"inline_keyboard": keyboard}
        return {
            "keyboard": [[{"text": b["text"]} for b in row] for row in rows],
            "resize_keyboard": ctx.data.get("resizeKeyboard", True),
            "one_time_keyboard": ctx.data.get("oneTimeKeyboard", True),
            "is_persistent": ctx.data.get("isPersistent", False),
        }

    def _store_callback(self, ctx: ExecutionContext) -> None:
        prefix = f"keyboard_{ctx.node.id}"
        cb = ctx.event.callback
        ctx.set_var(f"{prefix}_last_callback_data", cb.data)
        ctx.set_var(f"{prefix}_last_callback_id", cb.id)
        ctx.set_var(f"{prefix}_callback_timestamp", ctx.clock().isoformat())
        ctx.set_var(f"{prefix}_callback_user_id", ctx.event.user.id)
        ctx.set_var(f"{prefix}_callback_username", ctx.event.user.username)
        ctx.set_var(f"{prefix}_callback_first_name", ctx.event.user.first_name)
        ctx.set_var(f"{prefix}_callback_message_id", cb.message_id or "")
        ctx.set_var(f"{prefix}_callback_chat_id", ctx.event.chat.id)

    async def _send(self, ctx: ExecutionContext, text: str, rows, inline: bool) -> bool:
        options: dict[str, Any] = {}
        if rows:
            options["reply_markup"] = self._markup(ctx, rows, inline)
        if ctx.data.get("parseMode"):
            options["parse_mode"] = ctx.data["parseMode"]
        try:
            message_id = await self.send_and_record(ctx, text, options)
        except GatewayError as e:
            logger.error("keyboard_send_failed", node_id=ctx.node.id, error=str(e))
            ctx.set_var(f"keyboard_{ctx.node.id}_error", str(e))
            return False
        if message_id:
            ctx.set_var(f"keyboard_{ctx.node.id}_sent_message_id", message_id)
        return True

    async def execute(self, ctx: ExecutionContext) -> NodeResult:
        raw_text = ctx.data.get("messageText") or ctx.data.get("text")
        if not raw_text:
            logger.warning("keyboard_text_missing", node_id=ctx.node.id)
            return NodeResult.wait()

        inline = bool(ctx.data.get("isInline", False))
        rows = self._render_rows(ctx)
        flat = [b for row in rows for b in row]
        text = ctx.render(raw_text)
        event = ctx.event

        if event.is_callback:
            stored = ctx.session.get_variable(f"keyboard_{ctx.node.id}_sent_message_id")
            if stored is None or event.callback.message_id != stored:
                logger.info("keyboard_foreign_callback", node_id=ctx.node.id,
                            callback_message_id=event.callback.message_id, stored_message_id=stored)
                sent = await self._send(ctx, text, rows, inline)
                if sent and flat and not needs_callback(flat):
                    return NodeResult.output("button-0")
                return NodeResult.wait()

            self._store_callback(ctx)
            pressed = event.callback.data
            index = next((i for i, b in enumerate(flat) if callback_token(b) == pressed), -1)
            if index < 0:
                logger.warning("keyboard_button_not_found", node_id=ctx.node.id, callback_data=pressed)
                index = 0
            logger.info("keyboard_button_pressed", node_id=ctx.node.id, button=index)
            return NodeResult.output(f"button-{index}", consume_event=True)

        if not inline and not ctx.reached_through_transition and (event.text or "").strip():
            typed = event.text.strip()
            index = next((i for i, b in enumerate(flat) if b["text"].strip() == typed), -1)
            if index >= 0:
                logger.info("keyboard_button_typed", node_id=ctx.node.id, button=index)
                return NodeResult.output(f"button-{index}", consume_event=True)

        sent = await self._send(ctx, text, rows, inline)
        if sent and flat and not needs_callback(flat):
            return NodeResult.output("button-0")
        return NodeResult.wait()
