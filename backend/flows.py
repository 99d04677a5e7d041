"""
Flow Repository — where the engine finds a bot's active flow.

Flow definitions are authored elsewhere; the engine only reads them.
``InMemoryFlowRepository`` holds flows registered in code and can load
``<bot_id>.json`` files in the editor wire shape from a directory.
"""
from __future__ import annotations

import abc
import json
import structlog
from pathlib import Path
from typing import Any, Optional

from core.errors import FlowValidationError
from models.schemas import Flow

logger = structlog.get_logger()


class FlowRepository(abc.ABC):

    @abc.abstractmethod
    async def get_active_flow(self, bot_id: str) -> Optional[Flow]:
        ...


class InMemoryFlowRepository(FlowRepository):

    def __init__(self, flows: dict[str, Flow] = None):
        self._flows: dict[str, Flow] = dict(flows or {})

    def set_active_flow(self, bot_id: str, flow: Flow) -> None:
        self._flows[bot_id] = flow
        logger.info("flow_activated", bot_id=bot_id, flow_id=flow.id,
                    nodes=len(flow.nodes), edges=len(flow.edges))

    def load_wire(self, bot_id: str, payload: dict[str, Any], flow_id: str = None) -> Flow:
        flow = Flow.from_wire(payload, bot_id=bot_id, flow_id=flow_id)
        self.set_active_flow(bot_id, flow)
        return flow

    def load_directory(self, flows_dir: str) -> int:
        """Load every ``<bot_id>.json`` file in *flows_dir*. Invalid files are skipped."""
        path = Path(flows_dir)
        if not path.is_dir():
            logger.warning("flows_dir_missing", flows_dir=flows_dir)
            return 0
        loaded = 0
        for file in sorted(path.glob("*.json")):
            try:
                with open(file) as f:
                    payload = json.load(f)
                self.load_wire(file.stem, payload, flow_id=payload.get("id") or file.stem)
                loaded += 1
            except (OSError, json.JSONDecodeError, FlowValidationError) as e:
                logger.error("flow_load_failed", file=str(file), error=str(e))
        return loaded

    async def get_active_flow(self, bot_id: str) -> Optional[Flow]:
        return self._flows.get(bot_id)
