"""
Flow Execution Controller — runs one inbound event through a bot's flow.

Per event:
  lock the session → record the inbound message → pick the entry node
  → trampoline: execute node, resolve its output to target(s), push them
  → stop when a node waits, the flow ends, no edge leads on, or the
    per-event step cap is hit → save the session

Handlers never call each other. Each returns a ``NodeResult`` and the loop
below resolves edges and schedules the next node, so the call stack stays
flat no matter how long the chain is, and a cycle without a waiting node
is cut off at ``engine.max_steps_per_event``.
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Optional

from backend.flows import FlowRepository
from context.sessions import SessionLocks, SessionStore
from core.traversal import find_all_next, find_default_next, find_next, find_next_by_output
from models.schemas import (
    BotIdentity, Flow, HistoryMessage, InboundEvent, MessageDirection,
    Node, NodeType, Session,
)
from nodes.base import ExecutionContext, HandlerDeps, NodeResult, Outcome
from nodes.entry import NewMessageHandler
from nodes.registry import HandlerRegistry

logger = structlog.get_logger()


class StopReason:
    SUSPENDED = "suspended"        # a node is waiting for the next event
    TERMINATED = "terminated"      # an End node cleared the session
    EXHAUSTED = "exhausted"        # no edge leads on
    STEP_LIMIT = "step_limit"      # per-event step cap reached
    NO_FLOW = "no_flow"
    NO_ENTRY_NODE = "no_entry_node"


@dataclass
class ExecutionReport:
    session: Optional[Session]
    executed_nodes: list[str] = field(default_factory=list)
    stopped_reason: str = StopReason.EXHAUSTED

    @property
    def steps(self) -> int:
        return len(self.executed_nodes)


@dataclass(frozen=True)
class _Frame:
    node_id: str


@dataclass(frozen=True)
class _RestoreMarker:
    """Popped after every target of a fan-out has run."""
    origin_id: str
    last_target_id: str


class FlowExecutionController:

    def __init__(
        self,
        flows: FlowRepository,
        sessions: SessionStore,
        registry: HandlerRegistry,
        deps: HandlerDeps,
        locks: SessionLocks = None,
    ):
        self.flows = flows
        self.sessions = sessions
        self.registry = registry
        self.deps = deps
        self.locks = locks or SessionLocks()
        self._engine = deps.settings.engine

    # ══════════════════════════════════════════════════════════
    #  INBOUND
    # ══════════════════════════════════════════════════════════

    async def process_event(self, bot: BotIdentity, event: InboundEvent) -> ExecutionReport:
        key = (bot.id, event.user.id)
        async with self.locks.hold(key):
            return await self._process_locked(bot, event)

    async def _process_locked(self, bot: BotIdentity, event: InboundEvent) -> ExecutionReport:
        await self._record_inbound(bot, event)

        flow = await self.flows.get_active_flow(bot.id)
        if flow is None:
            logger.warning("no_active_flow", bot_id=bot.id)
            return ExecutionReport(session=None, stopped_reason=StopReason.NO_FLOW)

        session = await self.sessions.get_or_create(bot.id, event.user.id, event.chat.id)
        entry = self._resolve_entry(flow, session, event)
        if entry is None:
            logger.info("no_entry_node", bot_id=bot.id, user_id=event.user.id, text=event.text)
            session.touch()
            await self.sessions.save(session)
            return ExecutionReport(session=session, stopped_reason=StopReason.NO_ENTRY_NODE)

        report = await self._run(bot, event, session, flow, entry)
        session.touch()
        await self.sessions.save(session)
        logger.info(
            "event_processed",
            bot_id=bot.id,
            user_id=session.user_id,
            steps=report.steps,
            stopped=report.stopped_reason,
            current_node=session.current_node_id,
        )
        return report

    async def _record_inbound(self, bot: BotIdentity, event: InboundEvent) -> None:
        try:
            await self._write_inbound(bot, event)
        except Exception as e:
            logger.error("inbound_record_failed", bot_id=bot.id, user_id=event.user.id, error=str(e))

    async def _write_inbound(self, bot: BotIdentity, event: InboundEvent) -> None:
        await self.deps.history.record_message(HistoryMessage(
            bot_id=bot.id,
            chat_id=event.chat.id,
            user_id=event.user.id,
            chat_type=event.chat.type,
            direction=MessageDirection.INBOUND,
            text=event.text or (event.callback.data if event.callback else "") or "",
            message_id=event.message_id,
            metadata={
                "content_type": event.content_type.value,
                "is_callback": event.is_callback,
                "username": event.user.username,
                "first_name": event.user.first_name,
            },
            created_at=event.timestamp,
        ))

    # ══════════════════════════════════════════════════════════
    #  ENTRY RESOLUTION
    # ══════════════════════════════════════════════════════════

    def _resolve_entry(self, flow: Flow, session: Session, event: InboundEvent) -> Optional[str]:
        text = (event.text or "").strip()
        if text and text == self._engine.start_command:
            starts = flow.nodes_of_type(NodeType.START)
            if starts:
                return starts[0].id

        if session.current_node_id:
            if flow.get_node(session.current_node_id) is not None:
                return session.current_node_id
            logger.warning("current_node_missing", bot_id=session.bot_id,
                           user_id=session.user_id, node_id=session.current_node_id)
            session.current_node_id = None

        if event.is_callback:
            return self._keyboard_for_callback(flow, session, event)

        return self._match_trigger(flow, event)

    @staticmethod
    def _keyboard_for_callback(flow: Flow, session: Session, event: InboundEvent) -> Optional[str]:
        message_id = event.callback.message_id
        if not message_id:
            return None
        for node in flow.nodes_of_type(NodeType.KEYBOARD):
            if session.get_variable(f"keyboard_{node.id}_sent_message_id") == message_id:
                return node.id
        return None

    @staticmethod
    def _match_trigger(flow: Flow, event: InboundEvent) -> Optional[str]:
        """A matching New-Message node; triggers with an explicit text beat catch-alls."""
        fallback = None
        for node in flow.nodes_of_type(NodeType.NEW_MESSAGE):
            if not NewMessageHandler.matches(node.data, event):
                continue
            if ((node.data.get("newMessage") or {}).get("text") or "").strip():
                return node.id
            fallback = fallback or node.id
        return fallback

    # ══════════════════════════════════════════════════════════
    #  TRAVERSAL
    # ══════════════════════════════════════════════════════════

    async def _run(
        self, bot: BotIdentity, event: InboundEvent, session: Session, flow: Flow, entry_id: str,
    ) -> ExecutionReport:
        report = ExecutionReport(session=session)
        stack: list = [_Frame(entry_id)]
        last: Optional[NodeResult] = None

        while stack:
            item = stack.pop()
            if isinstance(item, _RestoreMarker):
                if find_next(flow, item.last_target_id) is None:
                    session.current_node_id = item.origin_id
                    logger.debug("fanout_restored", origin=item.origin_id)
                continue

            if report.steps >= self._engine.max_steps_per_event:
                logger.error("flow_step_limit_reached", bot_id=bot.id, user_id=session.user_id,
                             node_id=item.node_id, limit=self._engine.max_steps_per_event)
                report.stopped_reason = StopReason.STEP_LIMIT
                return report

            node = flow.get_node(item.node_id)
            if node is None:
                logger.warning("node_not_found", node_id=item.node_id)
                continue

            session.current_node_id = node.id
            session.touch()
            result = await self._execute_node(bot, event, session, flow, node,
                                              reached_through_transition=report.steps > 0)
            report.executed_nodes.append(node.id)
            last = result
            if result is None:
                continue
            if result.consume_event:
                event = event.consumed()

            if result.outcome == Outcome.END:
                session.current_node_id = None
                report.stopped_reason = StopReason.TERMINATED
                return report
            if result.outcome == Outcome.WAIT:
                continue
            stack.extend(self._next_frames(flow, node, result))

        if last is None or last.outcome in (Outcome.WAIT, Outcome.RECOVER):
            report.stopped_reason = StopReason.SUSPENDED
        else:
            report.stopped_reason = StopReason.EXHAUSTED
        return report

    async def _execute_node(
        self,
        bot: BotIdentity,
        event: InboundEvent,
        session: Session,
        flow: Flow,
        node: Node,
        reached_through_transition: bool,
    ) -> Optional[NodeResult]:
        """Run one handler. ``None`` means the node has no handler and the flow stalls on it."""
        handler = self.registry.lookup(node.type)
        if handler is None:
            logger.warning("unknown_node_type", node_id=node.id, node_type=node.type)
            return None

        ctx = ExecutionContext(
            bot=bot,
            event=event,
            session=session,
            flow=flow,
            node=node,
            reached_through_transition=reached_through_transition,
            clock=self.deps.clock,
        )
        try:
            result = await handler.execute(ctx)
        except Exception as e:
            logger.exception("node_execution_failed", node_id=node.id, node_type=node.type)
            session.set_variable(f"{node.type}_{node.id}_error", str(e) or type(e).__name__)
            result = NodeResult.recover()

        logger.debug("node_executed", node_id=node.id, node_type=node.type, result=repr(result))
        return result

    @staticmethod
    def _next_frames(flow: Flow, node: Node, result: NodeResult) -> list:
        """Stack items for the node's successors, pushed so the first target pops first."""
        if result.outcome == Outcome.BRANCH:
            target = find_next(flow, node.id, result.handle)
            return [_Frame(target)] if target else []
        if result.outcome == Outcome.OUTPUT:
            target = find_next_by_output(flow, node.id, result.handle)
            if target is None:
                logger.warning("output_not_connected", node_id=node.id, output=result.handle)
                return []
            return [_Frame(target)]

        if result.outcome == Outcome.RECOVER:
            targets = find_default_next(flow, node.id)
            if not targets:
                logger.warning("failed_node_stalled", node_id=node.id)
                return []
        else:
            targets = find_all_next(flow, node.id)
        if len(targets) <= 1:
            return [_Frame(t) for t in targets]
        logger.info("fanout", node_id=node.id, targets=len(targets))
        return [_RestoreMarker(node.id, targets[-1])] + [_Frame(t) for t in reversed(targets)]

    # ══════════════════════════════════════════════════════════
    #  MAINTENANCE
    # ══════════════════════════════════════════════════════════

    async def cleanup_sessions(self) -> int:
        return await self.sessions.cleanup(timedelta(hours=self._engine.session_ttl_hours))
