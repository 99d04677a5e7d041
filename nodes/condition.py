"""Condition node — branches on ``"true"`` / ``"false"``."""
from __future__ import annotations

import structlog

from models.schemas import NodeType
from nodes.base import ExecutionContext, NodeHandler, NodeResult
from utils.conditions import evaluate_condition, is_known_operator

logger = structlog.get_logger()


class ConditionHandler(NodeHandler):
    """
    ``data.condition = {operator, value, caseSensitive?, variable?}``

    The left operand is the inbound text, or the session variable named by
    ``variable`` when set. ``value`` is rendered before comparison. Without
    a condition the node stalls until the next event.
    """

    node_type = NodeType.CONDITION

    async def execute(self, ctx: ExecutionContext) -> NodeResult:
        condition = ctx.data.get("condition")
        if not condition:
            logger.warning("condition_config_missing", node_id=ctx.node.id)
            return NodeResult.wait()

        operator = condition.get("operator", "")
        if not is_known_operator(operator):
            logger.warning("condition_operator_unknown", node_id=ctx.node.id, operator=operator)

        if condition.get("variable"):
            left = ctx.session.get_variable(condition["variable"], "")
        else:
            left = ctx.event.text or ""
        right = ctx.render(condition.get("value") or "")

        met = evaluate_condition(
            operator, left, right,
            case_sensitive=None if condition.get("caseSensitive") is None else bool(condition["caseSensitive"]),
            variables=ctx.session.variables,
        )
        logger.info("condition_evaluated", node_id=ctx.node.id, operator=operator, result=met)
        return NodeResult.branch("true" if met else "false")
