"""Database node — runs one query against the bot's external datastore."""
from __future__ import annotations

import json
import structlog

from pydantic import ValidationError

from models.schemas import DatabaseQueryConfig, NodeType
from nodes.base import ExecutionContext, NodeHandler, NodeResult

logger = structlog.get_logger()


class DatabaseHandler(NodeHandler):
    """
    ``data.database`` holds a query configuration (dataSource, table or
    collection, operation, where, key, data, limit, offset, orderBy). Every
    string in it is rendered, nested ``data`` included, before the query is
    handed to the datastore.

    Writes ``db_<nodeId>_success``, ``_count``, ``_result`` (JSON) and
    ``_error``. Always advances.
    """

    node_type = NodeType.DATABASE

    async def execute(self, ctx: ExecutionContext) -> NodeResult:
        prefix = f"db_{ctx.node.id}"
        raw = ctx.data.get("database")
        if not raw:
            logger.warning("database_config_missing", node_id=ctx.node.id)
            ctx.set_var(f"{prefix}_error", "Database configuration not found")
            return NodeResult.advance()

        try:
            query = DatabaseQueryConfig.model_validate(ctx.render_value(raw))
        except ValidationError as e:
            logger.warning("database_config_invalid", node_id=ctx.node.id, error=str(e))
            ctx.set_var(f"{prefix}_success", "false")
            ctx.set_var(f"{prefix}_count", "0")
            ctx.set_var(f"{prefix}_error", f"Invalid database configuration: {e.error_count()} error(s)")
            return NodeResult.advance()

        try:
            result = await self.deps.datastore.execute_query(ctx.bot.id, query)
        except Exception as e:
            logger.exception("database_query_crashed", node_id=ctx.node.id)
            ctx.set_var(f"{prefix}_success", "false")
            ctx.set_var(f"{prefix}_error", str(e))
            return NodeResult.advance()

        ctx.set_var(f"{prefix}_success", "true" if result.success else "false")
        ctx.set_var(f"{prefix}_count", result.count or 0)
        if result.success:
            if result.data is not None:
                ctx.set_var(f"{prefix}_result", json.dumps(result.data, default=str, ensure_ascii=False))
            logger.info("database_query_completed", node_id=ctx.node.id,
                        operation=query.operation, count=result.count)
        else:
            ctx.set_var(f"{prefix}_error", result.error or "Unknown error")
            logger.warning("database_query_failed", node_id=ctx.node.id,
                           operation=query.operation, error=result.error)
        return NodeResult.advance()
