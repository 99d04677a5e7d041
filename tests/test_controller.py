"""End-to-end tests for the flow execution controller."""
import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from channels.memory import InMemoryGateway
from core.controller import FlowExecutionController, StopReason
from database.store_memory import InMemoryMessageHistoryStore
from models.schemas import MessageDirection, NodeType, Session
from nodes.registry import build_registry

from builders import make_event, make_flow, make_node


def _greeting_flow():
    return make_flow(
        [
            make_node("s", NodeType.START.value),
            make_node("m", NodeType.MESSAGE.value, text="Hello {{user.firstName}}"),
            make_node("e", NodeType.END.value),
        ],
        [("s", "m"), ("m", "e")],
    )


def _keyboard_flow():
    return make_flow(
        [
            make_node("s", NodeType.START.value),
            make_node("kb", NodeType.KEYBOARD.value, messageText="Pick", isInline=True,
                      buttons=[[{"text": "Yes", "callbackData": "yes"}, {"text": "No", "callbackData": "no"}]]),
            make_node("yes", NodeType.MESSAGE.value, text="You said yes"),
            make_node("no", NodeType.MESSAGE.value, text="You said no to {{keyboard_kb_last_callback_data}}"),
        ],
        [("s", "kb"), ("kb", "yes", "button-0"), ("kb", "no", "button-1")],
    )


class _ExplodingGateway(InMemoryGateway):
    """Raises a non-gateway error when asked to send one particular text."""

    def __init__(self, explode_on: str):
        super().__init__()
        self.explode_on = explode_on

    async def send_text(self, credential, chat_id, text, options=None):
        if text == self.explode_on:
            raise RuntimeError("renderer crashed")
        return await super().send_text(credential, chat_id, text, options)


class _InboundFailingHistory(InMemoryMessageHistoryStore):
    """History store whose writes fail for inbound messages only."""

    async def record_message(self, message):
        if message.direction == MessageDirection.INBOUND:
            raise ConnectionError("history database unavailable")
        return await super().record_message(message)


class TestEntryAndTermination:

    @pytest.mark.asyncio
    async def test_start_runs_to_end(self, controller, flows, bot, gateway):
        flows.set_active_flow("bot-1", _greeting_flow())
        report = await controller.process_event(bot, make_event("/start"))

        assert report.executed_nodes == ["s", "m", "e"]
        assert report.stopped_reason == StopReason.TERMINATED
        assert report.session.current_node_id is None
        assert gateway.texts("u1") == ["Hello Ann"]

    @pytest.mark.asyncio
    async def test_after_end_only_start_reenters(self, controller, flows, bot, gateway):
        flows.set_active_flow("bot-1", _greeting_flow())
        await controller.process_event(bot, make_event("/start"))

        idle = await controller.process_event(bot, make_event("hello again"))
        assert idle.stopped_reason == StopReason.NO_ENTRY_NODE
        assert idle.executed_nodes == []

        again = await controller.process_event(bot, make_event("/start"))
        assert again.stopped_reason == StopReason.TERMINATED
        assert gateway.texts() == ["Hello Ann", "Hello Ann"]

    @pytest.mark.asyncio
    async def test_start_command_restarts_mid_flow(self, controller, flows, bot, gateway):
        flows.set_active_flow("bot-1", _keyboard_flow())
        await controller.process_event(bot, make_event("/start"))
        report = await controller.process_event(bot, make_event("/start"))

        assert report.executed_nodes == ["s", "kb"]
        assert gateway.texts() == ["Pick", "Pick"]

    @pytest.mark.asyncio
    async def test_no_flow(self, controller, bot, history):
        report = await controller.process_event(bot, make_event("/start"))
        assert report.stopped_reason == StopReason.NO_FLOW
        assert report.session is None
        assert len(await history.list_messages("bot-1", "u1")) == 1

    @pytest.mark.asyncio
    async def test_inbound_recorded(self, controller, flows, bot, history):
        flows.set_active_flow("bot-1", _greeting_flow())
        await controller.process_event(bot, make_event("/start"))

        messages = await history.list_messages("bot-1", "u1")
        inbound = [m for m in messages if m.direction == MessageDirection.INBOUND]
        assert [m.text for m in inbound] == ["/start"]
        assert inbound[0].metadata["first_name"] == "Ann"
        assert inbound[0].metadata["is_callback"] is False

    @pytest.mark.asyncio
    async def test_history_failure_does_not_block_the_flow(self, deps_with, flows, sessions, bot, gateway):
        history = _InboundFailingHistory()
        deps = deps_with(history=history)
        controller = FlowExecutionController(flows, sessions, build_registry(deps), deps)
        flows.set_active_flow("bot-1", _keyboard_flow())

        report = await controller.process_event(bot, make_event("/start"))

        assert report.executed_nodes == ["s", "kb"]
        assert gateway.texts() == ["Pick"]
        saved = await sessions.get("bot-1", "u1")
        assert saved.current_node_id == "kb"
        assert saved.variables["keyboard_kb_sent_message_id"] == "1000"
        messages = await history.list_messages("bot-1", "u1")
        assert [m.direction for m in messages] == [MessageDirection.OUTBOUND]

    @pytest.mark.asyncio
    async def test_stale_current_node_is_cleared(self, controller, flows, sessions, bot):
        flows.set_active_flow("bot-1", _greeting_flow())
        await sessions.save(Session(bot_id="bot-1", user_id="u1", chat_id="u1", current_node_id="deleted"))

        report = await controller.process_event(bot, make_event("hi"))
        assert report.stopped_reason == StopReason.NO_ENTRY_NODE
        assert report.session.current_node_id is None


class TestTriggers:

    @staticmethod
    def _flow():
        return make_flow(
            [
                make_node("any", NodeType.NEW_MESSAGE.value, newMessage={}),
                make_node("menu", NodeType.NEW_MESSAGE.value, newMessage={"text": "menu"}),
                make_node("m_any", NodeType.MESSAGE.value, text="catch-all"),
                make_node("m_menu", NodeType.MESSAGE.value, text="the menu"),
            ],
            [("any", "m_any"), ("menu", "m_menu")],
        )

    @pytest.mark.asyncio
    async def test_explicit_text_beats_catch_all(self, controller, flows, bot, gateway):
        flows.set_active_flow("bot-1", self._flow())
        await controller.process_event(bot, make_event("Menu", user_id="u1"))
        await controller.process_event(bot, make_event("something", user_id="u2"))

        assert gateway.texts("u1") == ["the menu"]
        assert gateway.texts("u2") == ["catch-all"]


class TestKeyboardRoundTrip:

    @pytest.mark.asyncio
    async def test_callback_routes_through_pressed_button(self, controller, flows, bot, gateway):
        flows.set_active_flow("bot-1", _keyboard_flow())
        first = await controller.process_event(bot, make_event("/start"))
        assert first.stopped_reason == StopReason.SUSPENDED
        assert first.session.current_node_id == "kb"

        message_id = first.session.variables["keyboard_kb_sent_message_id"]
        second = await controller.process_event(
            bot, make_event(callback_data="no", callback_message_id=message_id))

        assert second.executed_nodes == ["kb", "no"]
        assert gateway.texts() == ["Pick", "You said no to no"]
        assert second.session.current_node_id == "no"

    @pytest.mark.asyncio
    async def test_callback_locates_keyboard_without_current_node(self, controller, flows, sessions, bot, gateway):
        flows.set_active_flow("bot-1", _keyboard_flow())
        await sessions.save(Session(bot_id="bot-1", user_id="u1", chat_id="u1",
                                    variables={"keyboard_kb_sent_message_id": "77"}))

        report = await controller.process_event(bot, make_event(callback_data="yes", callback_message_id="77"))
        assert report.executed_nodes == ["kb", "yes"]
        assert gateway.texts() == ["You said yes"]

    @pytest.mark.asyncio
    async def test_pressed_event_is_consumed_downstream(self, controller, flows, bot, gateway):
        flow = make_flow(
            [
                make_node("s", NodeType.START.value),
                make_node("kb", NodeType.KEYBOARD.value, messageText="Pick", isInline=True,
                          buttons=[{"text": "Go", "callbackData": "go"}]),
                make_node("echo", NodeType.MESSAGE.value, text="text=[{{message.text}}]"),
            ],
            [("s", "kb"), ("kb", "echo", "button-0")],
        )
        flows.set_active_flow("bot-1", flow)
        first = await controller.process_event(bot, make_event("/start"))
        message_id = first.session.variables["keyboard_kb_sent_message_id"]
        report = await controller.process_event(bot, make_event(callback_data="go", callback_message_id=message_id))

        assert report.executed_nodes == ["kb", "echo"]
        assert gateway.texts() == ["Pick", "text=[]"]


class TestTraversal:

    @pytest.mark.asyncio
    async def test_step_cap_breaks_cycles(self, controller, flows, bot, settings):
        settings.engine.max_steps_per_event = 5
        increment = {"name": "n", "value": "1", "operation": "increment"}
        flows.set_active_flow("bot-1", make_flow(
            [
                make_node("s", NodeType.START.value),
                make_node("v1", NodeType.VARIABLE.value, variable=increment),
                make_node("v2", NodeType.VARIABLE.value, variable=increment),
            ],
            [("s", "v1"), ("v1", "v2"), ("v2", "v1")],
        ))
        report = await controller.process_event(bot, make_event("/start"))

        assert report.stopped_reason == StopReason.STEP_LIMIT
        assert report.steps == 5
        assert report.session.variables["n"] == "4"

    @pytest.mark.asyncio
    async def test_long_chain_runs_without_recursion(self, controller, flows, bot, settings):
        settings.engine.max_steps_per_event = 2000
        count = 1500
        nodes = [make_node("s", NodeType.START.value)]
        nodes += [make_node(f"v{i}", NodeType.VARIABLE.value, variables={"last": str(i)}) for i in range(count)]
        edges = [("s", "v0")] + [(f"v{i}", f"v{i + 1}") for i in range(count - 1)]
        flows.set_active_flow("bot-1", make_flow(nodes, edges))

        report = await controller.process_event(bot, make_event("/start"))
        assert report.steps == count + 1
        assert report.session.variables["last"] == str(count - 1)
        assert report.stopped_reason == StopReason.EXHAUSTED

    @pytest.mark.asyncio
    async def test_handler_failure_is_recorded_and_flow_continues(self, controller, flows, bot, gateway):
        flows.set_active_flow("bot-1", make_flow(
            [
                make_node("s", NodeType.START.value),
                make_node("gc", NodeType.GROUP_CREATE.value),
                make_node("m", NodeType.MESSAGE.value, text="after"),
            ],
            [("s", "gc"), ("gc", "m")],
        ))
        report = await controller.process_event(bot, make_event("/start"))

        assert report.session.variables["group_create_gc_error"] == "groupCreate configuration not found"
        assert gateway.texts() == ["after"]

    @staticmethod
    def _broken_keyboard_flow(fallback: bool):
        nodes = [
            make_node("s", NodeType.START.value),
            make_node("kb", NodeType.KEYBOARD.value, messageText="Pick", isInline=True,
                      buttons=[[{"text": "Yes", "callbackData": "yes"}, {"text": "No", "callbackData": "no"}]]),
            make_node("yes", NodeType.MESSAGE.value, text="You said yes"),
            make_node("no", NodeType.MESSAGE.value, text="You said no"),
        ]
        edges = [("s", "kb"), ("kb", "yes", "button-0"), ("kb", "no", "button-1")]
        if fallback:
            nodes.append(make_node("sorry", NodeType.MESSAGE.value, text="Something went wrong"))
            edges.append(("kb", "sorry"))
        return make_flow(nodes, edges)

    @pytest.mark.asyncio
    async def test_failed_node_does_not_follow_labelled_edges(self, deps_with, flows, sessions, bot):
        broken = _ExplodingGateway(explode_on="Pick")
        deps = deps_with(gateway=broken)
        controller = FlowExecutionController(flows, sessions, build_registry(deps), deps)
        flows.set_active_flow("bot-1", self._broken_keyboard_flow(fallback=False))

        report = await controller.process_event(bot, make_event("/start"))

        assert report.executed_nodes == ["s", "kb"]
        assert report.stopped_reason == StopReason.SUSPENDED
        assert report.session.current_node_id == "kb"
        assert report.session.variables["keyboard_kb_error"] == "renderer crashed"
        assert broken.texts() == []

    @pytest.mark.asyncio
    async def test_failed_node_follows_unlabelled_edge(self, deps_with, flows, sessions, bot):
        broken = _ExplodingGateway(explode_on="Pick")
        deps = deps_with(gateway=broken)
        controller = FlowExecutionController(flows, sessions, build_registry(deps), deps)
        flows.set_active_flow("bot-1", self._broken_keyboard_flow(fallback=True))

        report = await controller.process_event(bot, make_event("/start"))

        assert report.executed_nodes == ["s", "kb", "sorry"]
        assert broken.texts() == ["Something went wrong"]
        assert report.session.current_node_id == "sorry"

    @pytest.mark.asyncio
    async def test_unknown_node_type_stalls(self, controller, flows, bot):
        flows.set_active_flow("bot-1", make_flow(
            [make_node("s", NodeType.START.value), make_node("x", "teleport")],
            [("s", "x")],
        ))
        report = await controller.process_event(bot, make_event("/start"))

        assert report.stopped_reason == StopReason.SUSPENDED
        assert report.session.current_node_id == "x"

    @pytest.mark.asyncio
    async def test_fan_out_runs_every_branch_then_restores(self, controller, flows, bot, gateway):
        flows.set_active_flow("bot-1", make_flow(
            [
                make_node("s", NodeType.START.value),
                make_node("a", NodeType.MESSAGE.value, text="A"),
                make_node("b", NodeType.MESSAGE.value, text="B"),
            ],
            [("s", "a"), ("s", "b")],
        ))
        report = await controller.process_event(bot, make_event("/start"))

        assert report.executed_nodes == ["s", "a", "b"]
        assert gateway.texts() == ["A", "B"]
        assert report.session.current_node_id == "s"

    @pytest.mark.asyncio
    async def test_condition_branches(self, controller, flows, bot, gateway):
        flows.set_active_flow("bot-1", make_flow(
            [
                make_node("s", NodeType.START.value),
                make_node("v", NodeType.VARIABLE.value, variables={"age": "21"}),
                make_node("c", NodeType.CONDITION.value,
                          condition={"variable": "age", "operator": "greaterThan", "value": "18"}),
                make_node("adult", NodeType.MESSAGE.value, text="adult"),
                make_node("minor", NodeType.MESSAGE.value, text="minor"),
            ],
            [("s", "v"), ("v", "c"), ("c", "adult", "true"), ("c", "minor", "false")],
        ))
        await controller.process_event(bot, make_event("/start"))
        assert gateway.texts() == ["adult"]


class TestConcurrency:

    @staticmethod
    def _tracking_sleep():
        state = {"active": 0, "peak": 0}

        async def sleep(seconds):
            state["active"] += 1
            state["peak"] = max(state["peak"], state["active"])
            await asyncio.sleep(0.01)
            state["active"] -= 1

        return sleep, state

    @staticmethod
    def _delay_flow():
        return make_flow(
            [
                make_node("s", NodeType.START.value),
                make_node("d", NodeType.DELAY.value, delay={"value": 1, "unit": "seconds"}),
                make_node("e", NodeType.END.value),
            ],
            [("s", "d"), ("d", "e")],
        )

    @pytest.mark.asyncio
    async def test_events_for_one_session_are_serialized(self, deps_with, flows, sessions, bot):
        sleep, state = self._tracking_sleep()
        deps = deps_with(sleep=sleep)
        controller = FlowExecutionController(flows, sessions, build_registry(deps), deps)
        flows.set_active_flow("bot-1", self._delay_flow())

        reports = await asyncio.gather(
            controller.process_event(bot, make_event("/start")),
            controller.process_event(bot, make_event("/start")),
        )
        assert state["peak"] == 1
        assert all(r.stopped_reason == StopReason.TERMINATED for r in reports)
        assert len(controller.locks) == 0

    @pytest.mark.asyncio
    async def test_different_sessions_run_concurrently(self, deps_with, flows, sessions, bot):
        sleep, state = self._tracking_sleep()
        deps = deps_with(sleep=sleep)
        controller = FlowExecutionController(flows, sessions, build_registry(deps), deps)
        flows.set_active_flow("bot-1", self._delay_flow())

        await asyncio.gather(
            controller.process_event(bot, make_event("/start", user_id="u1")),
            controller.process_event(bot, make_event("/start", user_id="u2")),
        )
        assert state["peak"] == 2


class TestMaintenance:

    @pytest.mark.asyncio
    async def test_cleanup_sessions(self, controller, sessions):
        await sessions.save(Session(bot_id="bot-1", user_id="old",
                                    last_activity=datetime.now(timezone.utc) - timedelta(days=3)))
        await sessions.get_or_create("bot-1", "new")
        assert await controller.cleanup_sessions() == 1
