"""
Group Action node — acts on the group the user currently belongs to.

``data.groupAction = {actionType, broadcast? | collect? | aggregate? | condition?}``

  broadcast  {message, buttons?, excludeSelf?}
             send a message to every member
  collect    {variableName, aggregateAs?, waitForAll=true, timeout?}
             gather each member's ``variableName`` into the shared list
             ``aggregateAs``; members still missing go to ``<aggregateAs>_late_users``
  aggregate  {operation, sourceVariable, targetVariable, scope=participants|group}
             sum | avg | min | max | count | list over member variables or a
             shared list
  condition  {field, operator, value}
             branch ``true``/``false`` on participantCount, a group field
             or ``sharedVariables.<name>``

A user outside any group, or a group that no longer exists, is an error.
"""
from __future__ import annotations

import json
import structlog
from datetime import timedelta
from typing import Any

from channels.base import GatewayError
from models.schemas import GroupSession, NodeType
from nodes.base import ExecutionContext, NodeHandler, NodeResult
from utils.conditions import evaluate_condition
from utils.substitution import TOKEN_RE

logger = structlog.get_logger()


def _number(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _tidy(value: Any) -> Any:
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


def _text(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False)


def _decode(raw: Any) -> Any:
    if not isinstance(raw, str):
        return raw
    try:
        return json.loads(raw)
    except ValueError:
        return raw


AGGREGATES = {
    "sum": lambda values: sum(_number(v) for v in values),
    "avg": lambda values: sum(_number(v) for v in values) / len(values) if values else 0,
    "min": lambda values: min((_number(v) for v in values), default=0),
    "max": lambda values: max((_number(v) for v in values), default=0),
    "count": len,
    "list": list,
}

GROUP_FIELDS = {
    "participantCount": lambda g: g.participant_count,
    "maxParticipants": lambda g: g.max_participants,
    "hostUserId": lambda g: g.host_user_id,
    "status": lambda g: g.status,
}


class GroupActionHandler(NodeHandler):

    node_type = NodeType.GROUP_ACTION

    async def execute(self, ctx: ExecutionContext) -> NodeResult:
        config = ctx.data.get("groupAction")
        if not config:
            raise ValueError("groupAction configuration not found")
        lobby = ctx.session.group_context
        if lobby is None:
            raise ValueError("User is not in a group")
        group = await self.deps.groups.find_by_id(lobby.group_session_id)
        if group is None:
            raise ValueError(f"Group session '{lobby.group_session_id}' not found")

        action = config.get("actionType")
        params = config.get(action) if isinstance(action, str) else None
        if action not in ("broadcast", "collect", "aggregate", "condition"):
            raise ValueError(f"Unknown group action '{action}'")
        if not params:
            raise ValueError(f"{action} configuration not found")

        logger.info("group_action", node_id=ctx.node.id, action=action, group_id=group.id)
        if action == "broadcast":
            await self._broadcast(ctx, group, params)
        elif action == "collect":
            return await self._collect(ctx, group, params)
        elif action == "aggregate":
            await self._aggregate(ctx, group, params)
        else:
            return self._condition(ctx, group, params)
        return NodeResult.advance()

    # ── broadcast ─────────────────────────────────────────────

    @staticmethod
    def _render(ctx: ExecutionContext, group: GroupSession, text: str) -> str:
        """Session variables first, then the group's shared variables."""
        rendered = ctx.render(text)
        shared = group.shared_variables
        return TOKEN_RE.sub(
            lambda m: _text(shared[m.group(1).strip()]) if m.group(1).strip() in shared else m.group(0),
            rendered,
        )

    async def _broadcast(self, ctx: ExecutionContext, group: GroupSession, config: dict[str, Any]) -> None:
        text = self._render(ctx, group, config.get("message") or "")
        if not text:
            raise ValueError("Group broadcast message is empty")
        options: dict[str, Any] = {}
        buttons = config.get("buttons") or []
        if buttons:
            options["reply_markup"] = {"inline_keyboard": [
                [{"text": b["text"], "url": b["url"]} if b.get("url")
                 else {"text": b["text"], "callback_data": b.get("callbackData") or b["text"]}]
                for b in buttons if b.get("text")
            ]}

        sent = failed = 0
        for participant in group.participant_ids:
            if config.get("excludeSelf") and participant == ctx.session.user_id:
                continue
            try:
                await self.send_and_record(ctx, text, options, chat_id=participant)
                sent += 1
            except GatewayError as e:
                failed += 1
                logger.warning("group_broadcast_send_failed", group_id=group.id,
                               participant=participant, error=str(e))
        ctx.set_var(f"group_action_{ctx.node.id}_sent", sent)
        ctx.set_var(f"group_action_{ctx.node.id}_failed", failed)
        logger.info("group_broadcast_done", group_id=group.id, sent=sent, failed=failed)

    # ── collect ───────────────────────────────────────────────

    async def _collect(self, ctx: ExecutionContext, group: GroupSession, config: dict[str, Any]) -> NodeResult:
        variable = config.get("variableName")
        if not variable:
            raise ValueError("Group collect needs a variableName")
        target = config.get("aggregateAs") or variable
        groups = self.deps.groups
        action_id = ctx.node.id

        answer = ctx.session.get_variable(variable)
        if answer is not None:
            collection = await groups.record_response(group.id, action_id, ctx.session.user_id, answer)
        else:
            collection = await groups.open_collection(group.id, action_id)

        participants = list(group.participant_ids)
        missing = [p for p in participants if p not in collection.responses]
        timeout = config.get("timeout")
        expired = bool(timeout) and ctx.clock() - collection.started_at > timedelta(seconds=float(timeout))
        if missing and config.get("waitForAll", True) is not False and not expired:
            logger.info("group_collect_waiting", group_id=group.id, node_id=action_id,
                        answered=len(participants) - len(missing), participants=len(participants))
            return NodeResult.wait()

        collected = [_decode(collection.responses[p]) for p in participants if p in collection.responses]
        await groups.update_shared_variables(group.id, {target: collected, f"{target}_late_users": missing})
        await groups.close_collection(group.id, action_id)
        logger.info("group_collect_done", group_id=group.id, node_id=action_id,
                    collected=len(collected), late=len(missing))
        return NodeResult.advance()

    # ── aggregate ─────────────────────────────────────────────

    async def _member_values(self, ctx: ExecutionContext, group: GroupSession, name: str) -> list[Any]:
        values = []
        for participant in group.participant_ids:
            if participant == ctx.session.user_id:
                variables = ctx.session.variables
            elif self.deps.sessions is not None:
                member = await self.deps.sessions.get(ctx.bot.id, participant)
                variables = member.variables if member else {}
            else:
                variables = {}
            if name in variables:
                values.append(variables[name])
        return values

    async def _aggregate(self, ctx: ExecutionContext, group: GroupSession, config: dict[str, Any]) -> None:
        operation = config.get("operation")
        if operation not in AGGREGATES:
            raise ValueError(f"Unknown aggregate operation '{operation}'")
        source = config.get("sourceVariable")
        target = config.get("targetVariable") or source
        if not source:
            raise ValueError("Group aggregate needs a sourceVariable")

        scope = config.get("scope") or "participants"
        if scope == "group":
            values = group.shared_variables.get(source)
            if not isinstance(values, list):
                raise ValueError(f"Shared variable '{source}' is not a list")
        else:
            values = await self._member_values(ctx, group, source)

        result = _tidy(AGGREGATES[operation](values))
        if scope == "group":
            await self.deps.groups.update_shared_variables(group.id, {target: result})
        else:
            ctx.set_var(target, _text(result))
        logger.info("group_aggregate_done", group_id=group.id, operation=operation,
                    scope=scope, values=len(values))

    # ── condition ─────────────────────────────────────────────

    def _condition(self, ctx: ExecutionContext, group: GroupSession, config: dict[str, Any]) -> NodeResult:
        field = config.get("field") or ""
        if field.startswith("sharedVariables."):
            actual = group.shared_variables.get(field[len("sharedVariables."):])
        elif field in GROUP_FIELDS:
            actual = GROUP_FIELDS[field](group)
        else:
            actual = None
        left = "" if actual is None else _text(actual)
        right = ctx.render(str(config.get("value", "")))

        met = evaluate_condition(config.get("operator") or "equals", left, right)
        logger.info("group_condition_evaluated", node_id=ctx.node.id, field=field, result=met)
        return NodeResult.branch("true" if met else "false")
