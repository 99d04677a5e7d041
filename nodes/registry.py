"""
Handler registry — maps a node's type string to its handler.

The registry is populated once at startup by ``build_registry`` and then
frozen. ``build_registry`` refuses to return a registry that leaves any
``NodeType`` without a handler.
"""
from __future__ import annotations

import structlog
from types import MappingProxyType
from typing import Mapping, Optional

from core.errors import RegistryError
from models.schemas import NodeType
from nodes.base import HandlerDeps, NodeHandler
from nodes.broadcast import BroadcastHandler
from nodes.calculator import CalculatorHandler
from nodes.condition import ConditionHandler
from nodes.database import DatabaseHandler
from nodes.delay import DelayHandler
from nodes.entry import EndHandler, NewMessageHandler, StartHandler
from nodes.group import GroupCreateHandler, GroupJoinHandler, GroupLeaveHandler
from nodes.group_action import GroupActionHandler
from nodes.keyboard import KeyboardHandler
from nodes.location import LocationHandler
from nodes.messaging import FileHandler, FormHandler, MessageHandler
from nodes.periodic import PeriodicControlHandler
from nodes.random_choice import RandomHandler
from nodes.variable import VariableHandler
from nodes.webhook import WebhookHandler

logger = structlog.get_logger()

HANDLER_CLASSES: tuple[type[NodeHandler], ...] = (
    StartHandler,
    NewMessageHandler,
    MessageHandler,
    KeyboardHandler,
    ConditionHandler,
    WebhookHandler,
    DatabaseHandler,
    RandomHandler,
    BroadcastHandler,
    VariableHandler,
    PeriodicControlHandler,
    GroupCreateHandler,
    GroupJoinHandler,
    GroupLeaveHandler,
    DelayHandler,
    CalculatorHandler,
    FileHandler,
    FormHandler,
    LocationHandler,
    GroupActionHandler,
    EndHandler,
)


class HandlerRegistry:
    def __init__(self):
        self._handlers: Mapping[str, NodeHandler] = {}
        self._frozen = False

    @property
    def frozen(self) -> bool:
        return self._frozen

    def register(self, handler: NodeHandler) -> None:
        type_name = handler.node_type.value
        if self._frozen:
            raise RegistryError(f"Registry is frozen, cannot register '{type_name}'", type_name)
        if type_name in self._handlers:
            raise RegistryError(f"Handler for '{type_name}' already registered", type_name)
        self._handlers[type_name] = handler

    def freeze(self) -> "HandlerRegistry":
        self._handlers = MappingProxyType(dict(self._handlers))
        self._frozen = True
        return self

    def lookup(self, node_type: str) -> Optional[NodeHandler]:
        return self._handlers.get(node_type)

    def missing(self) -> list[str]:
        return [t.value for t in NodeType if t.value not in self._handlers]

    def types(self) -> list[str]:
        return list(self._handlers)

    def __contains__(self, node_type: str) -> bool:
        return node_type in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)


def build_registry(deps: HandlerDeps, handler_classes=HANDLER_CLASSES) -> HandlerRegistry:
    """Instantiate every handler against *deps*, check coverage and freeze."""
    registry = HandlerRegistry()
    for cls in handler_classes:
        registry.register(cls(deps))

    missing = registry.missing()
    if missing:
        raise RegistryError(f"No handler for node types: {', '.join(missing)}", missing[0])

    logger.info("handler_registry_built", handlers=len(registry))
    return registry.freeze()
