"""Random node — weighted pick of one value into a session variable."""
from __future__ import annotations

import random
import structlog
from typing import Any, Optional

from models.schemas import NodeType
from nodes.base import ExecutionContext, NodeHandler, NodeResult

logger = structlog.get_logger()


def _weight(option: dict[str, Any]) -> float:
    raw = option.get("weight")
    if raw is None or raw == "":
        return 1.0
    try:
        return float(raw)
    except (TypeError, ValueError):
        return 0.0


def valid_options(options: list[Any]) -> list[dict[str, Any]]:
    """Options with a non-empty value and a positive weight (default 1)."""
    return [
        o for o in options or []
        if isinstance(o, dict) and str(o.get("value") or "").strip() and _weight(o) > 0
    ]


def weighted_pick(options: list[dict[str, Any]], rng: random.Random) -> Optional[dict[str, Any]]:
    """Draw uniformly in [0, total] and take the first option whose cumulative weight reaches it."""
    if not options:
        return None
    total = sum(_weight(o) for o in options)
    draw = rng.random() * total
    cumulative = 0.0
    for option in options:
        cumulative += _weight(option)
        if draw <= cumulative:
            return option
    return options[-1]


class RandomHandler(NodeHandler):
    """``data.random = {options: [{value, weight?, label?}], variable}``"""

    node_type = NodeType.RANDOM

    async def execute(self, ctx: ExecutionContext) -> NodeResult:
        config = ctx.data.get("random") or {}
        variable = (config.get("variable") or "").strip()
        if not variable:
            logger.warning("random_variable_missing", node_id=ctx.node.id)
            return NodeResult.wait()

        options = valid_options(config.get("options"))
        if not options:
            logger.warning("random_no_valid_options", node_id=ctx.node.id)
            return NodeResult.wait()

        chosen = weighted_pick(options, self.deps.rng)
        ctx.set_var(variable, str(chosen["value"]))
        logger.info("random_option_chosen", node_id=ctx.node.id, variable=variable,
                    label=chosen.get("label", ""))
        return NodeResult.advance()
