"""
Periodic Task Service — remote control for externally scheduled tasks.

Periodic tasks run on their own schedule outside any chat session; flows
only steer them through the Periodic Control node. The in-memory service
keeps task metadata and enforces the lifecycle:

    running ⇄ paused      (pause only a running task, resume only a paused one)
    any → stopped
    any → running         (restart, execution counter reset)
    running → completed   (max executions reached)
"""
from __future__ import annotations

import abc
import structlog
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from models.schemas import PeriodicTaskStatus

logger = structlog.get_logger()


class PeriodicTaskService(abc.ABC):

    @abc.abstractmethod
    async def start(self, task_id: str) -> bool:
        ...

    @abc.abstractmethod
    async def stop(self, task_id: str) -> bool:
        ...

    @abc.abstractmethod
    async def pause(self, task_id: str) -> bool:
        ...

    @abc.abstractmethod
    async def resume(self, task_id: str) -> bool:
        ...

    @abc.abstractmethod
    async def restart(self, task_id: str) -> bool:
        ...

    @abc.abstractmethod
    async def get_status(self, task_id: str) -> Optional[PeriodicTaskStatus]:
        ...


@dataclass
class _TaskMetadata:
    task_id: str
    status: str = "stopped"
    execution_count: int = 0
    max_executions: int = 0            # 0 = unlimited
    last_executed_at: Optional[datetime] = None


class InMemoryPeriodicTaskService(PeriodicTaskService):

    def __init__(self):
        self._tasks: dict[str, _TaskMetadata] = {}

    def register(self, task_id: str, status: str = "running", max_executions: int = 0) -> None:
        self._tasks[task_id] = _TaskMetadata(task_id=task_id, status=status, max_executions=max_executions)
        logger.info("periodic_task_registered", task_id=task_id, status=status)

    def record_execution(self, task_id: str) -> None:
        task = self._tasks.get(task_id)
        if task is None or task.status != "running":
            return
        task.execution_count += 1
        task.last_executed_at = datetime.now(timezone.utc)
        if task.max_executions and task.execution_count >= task.max_executions:
            task.status = "completed"
            logger.info("periodic_task_completed", task_id=task_id, executions=task.execution_count)

    def _find(self, task_id: str) -> Optional[_TaskMetadata]:
        task = self._tasks.get(task_id)
        if task is None:
            logger.warning("periodic_task_not_found", task_id=task_id)
        return task

    async def start(self, task_id: str) -> bool:
        task = self._tasks.get(task_id)
        if task is None:
            self.register(task_id)
            return True
        if task.status == "running":
            return True
        task.status = "running"
        logger.info("periodic_task_started", task_id=task_id)
        return True

    async def stop(self, task_id: str) -> bool:
        task = self._find(task_id)
        if task is None:
            return False
        task.status = "stopped"
        logger.info("periodic_task_stopped", task_id=task_id)
        return True

    async def pause(self, task_id: str) -> bool:
        task = self._find(task_id)
        if task is None:
            return False
        if task.status != "running":
            logger.warning("periodic_task_not_running", task_id=task_id, status=task.status)
            return False
        task.status = "paused"
        logger.info("periodic_task_paused", task_id=task_id)
        return True

    async def resume(self, task_id: str) -> bool:
        task = self._find(task_id)
        if task is None:
            return False
        if task.status != "paused":
            logger.warning("periodic_task_not_paused", task_id=task_id, status=task.status)
            return False
        if task.max_executions and task.execution_count >= task.max_executions:
            task.status = "completed"
            return False
        task.status = "running"
        logger.info("periodic_task_resumed", task_id=task_id)
        return True

    async def restart(self, task_id: str) -> bool:
        task = self._find(task_id)
        if task is None:
            return False
        task.execution_count = 0
        task.status = "running"
        logger.info("periodic_task_restarted", task_id=task_id)
        return True

    async def get_status(self, task_id: str) -> Optional[PeriodicTaskStatus]:
        task = self._find(task_id)
        if task is None:
            return None
        return PeriodicTaskStatus(
            status=task.status,
            execution_count=task.execution_count,
            last_executed_at=task.last_executed_at,
        )
