"""Variable node — writes rendered values into session variables."""
from __future__ import annotations

import structlog
from typing import Any

from models.schemas import NodeType
from nodes.base import ExecutionContext, NodeHandler, NodeResult

logger = structlog.get_logger()


def _number(raw: Any, default: float = 0.0) -> float:
    try:
        return float(str(raw).strip())
    except (TypeError, ValueError):
        return default


def _format_number(value: float) -> str:
    return str(int(value)) if value.is_integer() else str(value)


def apply_operation(current: str, value: str, operation: str) -> str:
    """set | append | prepend | increment | decrement"""
    if operation == "append":
        return current + value
    if operation == "prepend":
        return value + current
    if operation in ("increment", "decrement"):
        step = _number(value, 1.0) if value.strip() else 1.0
        base = _number(current, 0.0)
        return _format_number(base + step if operation == "increment" else base - step)
    return value


class VariableHandler(NodeHandler):
    """
    ``data.variables = {name: template}``, every value rendered and stored.

    The single-variable form ``data.variable = {name, value, operation}``
    is also accepted, with operation one of set, append, prepend,
    increment, decrement.
    """

    node_type = NodeType.VARIABLE

    async def execute(self, ctx: ExecutionContext) -> NodeResult:
        variables = ctx.data.get("variables") or {}
        single = ctx.data.get("variable")

        if not variables and not single:
            logger.warning("variable_node_empty", node_id=ctx.node.id)
            return NodeResult.advance()

        for name, template in variables.items():
            if not name:
                continue
            ctx.set_var(name, ctx.render("" if template is None else str(template)))

        if isinstance(single, dict) and single.get("name"):
            name = single["name"]
            operation = single.get("operation") or "set"
            value = ctx.render("" if single.get("value") is None else str(single["value"]))
            ctx.set_var(name, apply_operation(ctx.session.get_variable(name, ""), value, operation))

        logger.info("variables_set", node_id=ctx.node.id,
                    count=len(variables) + (1 if isinstance(single, dict) and single.get("name") else 0))
        return NodeResult.advance()
