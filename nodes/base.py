"""
Node handler contract.

Every node type is implemented by a ``NodeHandler`` subclass. A handler
receives an ``ExecutionContext``, performs its side effects through the
collaborators in its ``HandlerDeps`` bundle, and returns a ``NodeResult``
telling the controller where traversal goes next. Handlers never call the
next handler themselves; the controller's loop does that.
"""
from __future__ import annotations

import abc
import asyncio
import random
import structlog
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional

from models.schemas import (
    BotIdentity, Flow, HistoryMessage, InboundEvent, MessageDirection,
    Node, NodeType, Session,
)
from utils.substitution import substitute, substitute_value

if TYPE_CHECKING:
    import httpx
    from backend.datastore import ExternalDatastore
    from backend.groups import GroupSessionService
    from backend.periodic import PeriodicTaskService
    from channels.base import MessagingGateway
    from config.settings import Settings
    from context.sessions import SessionStore
    from database.store_base import MessageHistoryStore

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Results
# ──────────────────────────────────────────────────────────────

class Outcome(str, Enum):
    ADVANCE = "advance"     # default output, every outgoing edge in order
    BRANCH = "branch"       # first edge with an exact handle
    OUTPUT = "output"       # named output with button-index fallback
    WAIT = "wait"           # stay on this node until the next event
    END = "end"             # terminal, clear the session's current node
    RECOVER = "recover"     # handler failed, unlabeled edges only


@dataclass(frozen=True)
class NodeResult:
    outcome: Outcome
    handle: Optional[str] = None
    consume_event: bool = False

    @classmethod
    def advance(cls) -> "NodeResult":
        return cls(Outcome.ADVANCE)

    @classmethod
    def branch(cls, handle: str) -> "NodeResult":
        return cls(Outcome.BRANCH, handle=handle)

    @classmethod
    def output(cls, name: str, consume_event: bool = False) -> "NodeResult":
        return cls(Outcome.OUTPUT, handle=name, consume_event=consume_event)

    @classmethod
    def wait(cls) -> "NodeResult":
        return cls(Outcome.WAIT)

    @classmethod
    def end(cls) -> "NodeResult":
        return cls(Outcome.END)

    @classmethod
    def recover(cls) -> "NodeResult":
        return cls(Outcome.RECOVER)

    def __repr__(self):
        if self.handle:
            return f"NodeResult({self.outcome.value}:{self.handle})"
        return f"NodeResult({self.outcome.value})"


# ──────────────────────────────────────────────────────────────
#  Dependencies and context
# ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class HandlerDeps:
    """Collaborators shared by every handler. Built once at startup."""
    settings: "Settings"
    gateway: "MessagingGateway"
    history: "MessageHistoryStore"
    datastore: "ExternalDatastore"
    periodic_tasks: "PeriodicTaskService"
    groups: "GroupSessionService"
    http_client: "httpx.AsyncClient"
    sessions: Optional["SessionStore"] = None
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    rng: random.Random = field(default_factory=random.Random)
    clock: Callable[[], datetime] = _utcnow


@dataclass
class ExecutionContext:
    """Everything one handler invocation sees."""
    bot: BotIdentity
    event: InboundEvent
    session: Session
    flow: Flow
    node: Node
    reached_through_transition: bool = False
    clock: Callable[[], datetime] = _utcnow

    @property
    def is_group_context(self) -> bool:
        return self.session.group_context is not None

    @property
    def chat_id(self) -> str:
        return self.event.chat.id or self.session.chat_id

    @property
    def data(self) -> dict[str, Any]:
        return self.node.data

    def render(self, text: Optional[str]) -> str:
        if text is None:
            return ""
        return substitute(str(text), self.event, self.session, self.clock())

    def render_value(self, value: Any) -> Any:
        return substitute_value(value, self.render)

    def set_var(self, name: str, value: Any) -> None:
        self.session.set_variable(name, value)


# ──────────────────────────────────────────────────────────────
#  Handler base
# ──────────────────────────────────────────────────────────────

class NodeHandler(abc.ABC):
    """Base class for all node handlers."""

    node_type: NodeType

    def __init__(self, deps: HandlerDeps):
        self.deps = deps

    def can_handle(self, node_type: str) -> bool:
        return node_type == self.node_type.value

    @abc.abstractmethod
    async def execute(self, ctx: ExecutionContext) -> NodeResult:
        ...

    async def send_and_record(
        self,
        ctx: ExecutionContext,
        text: str,
        options: dict[str, Any] = None,
        chat_id: str = None,
    ) -> Optional[str]:
        """Send a text message and write it to message history. Returns the provider message id."""
        target = chat_id or ctx.chat_id
        message_id = await self.deps.gateway.send_text(ctx.bot.token, target, text, options or {})
        await self.deps.history.record_message(HistoryMessage(
            bot_id=ctx.bot.id,
            chat_id=target,
            user_id=ctx.session.user_id,
            chat_type=ctx.event.chat.type,
            direction=MessageDirection.OUTBOUND,
            text=text,
            message_id=message_id,
            metadata={
                "node_id": ctx.node.id,
                "buttons": _flatten_buttons((options or {}).get("reply_markup")),
            },
        ))
        return message_id


def _flatten_buttons(markup: Optional[dict[str, Any]]) -> list[dict[str, Any]]:
    if not markup:
        return []
    rows = markup.get("inline_keyboard") or markup.get("keyboard") or []
    return [button for row in rows for button in row]
