"""Periodic Control node — steers an externally scheduled periodic task."""
from __future__ import annotations

import structlog
from typing import Optional

from models.schemas import NodeType
from nodes.base import ExecutionContext, NodeHandler, NodeResult

logger = structlog.get_logger()

# action → (service method, status reported on success)
ACTIONS: dict[str, tuple[str, str]] = {
    "start": ("resume", "running"),
    "resume": ("resume", "running"),
    "stop": ("stop", "stopped"),
    "pause": ("pause", "paused"),
    "restart": ("restart", "running"),
}


class PeriodicControlHandler(NodeHandler):
    """
    ``data.periodicControl = {action, taskIdSource, saveStatusVariable?}``

    The task id is read from the session variable named by
    ``taskIdSource``. Leaves through ``"success"`` when the task service
    acknowledged the action, ``"error"`` otherwise.
    """

    node_type = NodeType.PERIODIC_CONTROL

    async def execute(self, ctx: ExecutionContext) -> NodeResult:
        config = ctx.data.get("periodicControl")
        if not config:
            logger.warning("periodic_control_config_missing", node_id=ctx.node.id)
            return NodeResult.wait()

        action = config.get("action", "")
        source = config.get("taskIdSource", "")
        save_var = config.get("saveStatusVariable")

        token = "{{" + source + "}}"
        task_id = ctx.render(token) if source else ""
        if not task_id or task_id == token:
            logger.warning("periodic_task_id_unresolved", node_id=ctx.node.id, source=source)
            return NodeResult.branch("error")

        success = False
        status: Optional[str] = None
        service = self.deps.periodic_tasks
        try:
            if action == "get_status":
                record = await service.get_status(task_id)
                if record is not None:
                    success = True
                    status = record.status
                    details = save_var or "periodicStatus"
                    ctx.set_var(f"{details}_count", record.execution_count)
                    if record.last_executed_at:
                        ctx.set_var(f"{details}_lastExec", record.last_executed_at.isoformat())
            elif action in ACTIONS:
                method, reported = ACTIONS[action]
                success = await getattr(service, method)(task_id)
                status = reported if success else None
            else:
                logger.warning("periodic_action_unknown", node_id=ctx.node.id, action=action)
        except Exception as e:
            logger.error("periodic_action_failed", node_id=ctx.node.id, action=action,
                         task_id=task_id, error=str(e))
            success = False
            status = None

        if save_var:
            ctx.set_var(save_var, status or "error")

        logger.info("periodic_control_executed", node_id=ctx.node.id, action=action,
                    task_id=task_id, success=success)
        return NodeResult.branch("success" if success else "error")
