"""Calculator node — evaluates an arithmetic expression into a variable."""
from __future__ import annotations

import ast
import operator as op
import structlog
from typing import Any

from models.schemas import NodeType
from nodes.base import ExecutionContext, NodeHandler, NodeResult

logger = structlog.get_logger()

_BINARY = {
    ast.Add: op.add,
    ast.Sub: op.sub,
    ast.Mult: op.mul,
    ast.Div: op.truediv,
    ast.Mod: op.mod,
    ast.Pow: op.pow,
}
_UNARY = {ast.USub: op.neg, ast.UAdd: op.pos}

MAX_EXPONENT = 100


class ExpressionError(ValueError):
    pass


def evaluate_expression(expression: str) -> float:
    """Evaluate ``+ - * / % **`` over numbers and parentheses. Anything else is rejected."""
    try:
        tree = ast.parse(expression.strip(), mode="eval")
    except SyntaxError as e:
        raise ExpressionError(f"Invalid expression: '{expression}'") from e

    def walk(node: ast.AST) -> float:
        if isinstance(node, ast.Expression):
            return walk(node.body)
        if isinstance(node, ast.Constant) and isinstance(node.value, (int, float)) \
                and not isinstance(node.value, bool):
            return float(node.value)
        if isinstance(node, ast.BinOp) and type(node.op) in _BINARY:
            left, right = walk(node.left), walk(node.right)
            if isinstance(node.op, ast.Pow) and abs(right) > MAX_EXPONENT:
                raise ExpressionError("Exponent too large")
            try:
                return float(_BINARY[type(node.op)](left, right))
            except (ZeroDivisionError, OverflowError) as e:
                raise ExpressionError(str(e)) from e
        if isinstance(node, ast.UnaryOp) and type(node.op) in _UNARY:
            return _UNARY[type(node.op)](walk(node.operand))
        raise ExpressionError(f"Unsupported element in expression: '{expression}'")

    return walk(tree)


def format_result(value: float, precision: int, fmt: str, currency: str = "RUB") -> str:
    if fmt == "percentage":
        return f"{value * 100:.{precision}f}%"
    if fmt == "currency":
        return f"{value:,.{precision}f} {currency}".strip()
    return f"{value:.{precision}f}"


class CalculatorHandler(NodeHandler):
    """
    ``data.calculator = {expression, variableName, precision=2,
    format=number|percentage|currency, currency?}``
    """

    node_type = NodeType.CALCULATOR

    async def execute(self, ctx: ExecutionContext) -> NodeResult:
        config: dict[str, Any] = ctx.data.get("calculator") or {}
        expression = config.get("expression")
        variable = config.get("variableName")
        if not expression or not variable:
            logger.warning("calculator_config_missing", node_id=ctx.node.id)
            return NodeResult.advance()

        rendered = ctx.render(expression)
        try:
            precision = int(config.get("precision", 2))
            value = evaluate_expression(rendered)
        except (ExpressionError, TypeError, ValueError) as e:
            logger.error("calculator_failed", node_id=ctx.node.id, expression=rendered, error=str(e))
            ctx.set_var(f"calculator_{ctx.node.id}_error", str(e))
            return NodeResult.advance()

        result = format_result(value, precision, config.get("format") or "number",
                               config.get("currency") or "RUB")
        ctx.set_var(variable, result)
        logger.info("calculator_evaluated", node_id=ctx.node.id, variable=variable, result=result)
        return NodeResult.advance()
