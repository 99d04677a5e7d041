"""Tests for the Group Action node: broadcast, collect, aggregate, condition."""
import json
from datetime import timedelta

import pytest

from models.schemas import LobbyData, NodeType, Session
from nodes.base import Outcome
from nodes.group_action import GroupActionHandler

from builders import make_node


def _member(user_id, group_id, **variables) -> Session:
    return Session(bot_id="bot-1", user_id=user_id, chat_id=user_id, variables=variables,
                   group_context=LobbyData(group_session_id=group_id))


def _action(action_type, **params):
    return make_node("ga", NodeType.GROUP_ACTION.value,
                     groupAction={"actionType": action_type, action_type: params})


@pytest.fixture
def group_of_three(groups):
    async def factory():
        group = await groups.create("bot-1", "flow-1", "u1")
        await groups.add_participant(group.id, "u2")
        await groups.add_participant(group.id, "u3")
        return group
    return factory


class TestGroupActionErrors:

    @pytest.mark.asyncio
    async def test_user_outside_group(self, deps, make_ctx):
        session = Session(bot_id="bot-1", user_id="u1")
        with pytest.raises(ValueError, match="not in a group"):
            await GroupActionHandler(deps).execute(make_ctx(_action("broadcast", message="hi"), session=session))

    @pytest.mark.asyncio
    async def test_archived_group(self, deps, groups, make_ctx, group_of_three):
        group = await group_of_three()
        await groups.archive(group.id)
        with pytest.raises(ValueError, match="not found"):
            await GroupActionHandler(deps).execute(
                make_ctx(_action("broadcast", message="hi"), session=_member("u1", group.id)))

    @pytest.mark.asyncio
    async def test_unknown_action(self, deps, make_ctx, group_of_three):
        group = await group_of_three()
        with pytest.raises(ValueError, match="Unknown group action"):
            await GroupActionHandler(deps).execute(
                make_ctx(_action("teleport", x=1), session=_member("u1", group.id)))


class TestGroupBroadcast:

    @pytest.mark.asyncio
    async def test_sends_to_members_except_self(self, deps, groups, gateway, make_ctx, group_of_three):
        group = await group_of_three()
        await groups.update_shared_variables(group.id, {"round": 2})
        session = _member("u1", group.id, name="Ann")
        node = _action("broadcast", message="{{name}} starts round {{round}}", excludeSelf=True,
                       buttons=[{"text": "Ready", "callbackData": "ready"}])

        result = await GroupActionHandler(deps).execute(make_ctx(node, session=session))

        assert result.outcome == Outcome.ADVANCE
        assert [m.chat_id for m in gateway.sent] == ["u2", "u3"]
        assert gateway.texts("u2") == ["Ann starts round 2"]
        assert gateway.last.options["reply_markup"] == {
            "inline_keyboard": [[{"text": "Ready", "callback_data": "ready"}]]}
        assert session.variables["group_action_ga_sent"] == "2"
        assert session.variables["group_action_ga_failed"] == "0"

    @pytest.mark.asyncio
    async def test_failed_member_is_counted(self, deps, gateway, make_ctx, group_of_three):
        group = await group_of_three()
        gateway.failing_chats.add("u3")
        session = _member("u1", group.id)

        await GroupActionHandler(deps).execute(make_ctx(_action("broadcast", message="hi"), session=session))

        assert [m.chat_id for m in gateway.sent] == ["u1", "u2"]
        assert session.variables["group_action_ga_failed"] == "1"


class TestGroupCollect:

    @pytest.mark.asyncio
    async def test_waits_until_everyone_answered(self, deps, groups, make_ctx, group_of_three):
        group = await group_of_three()
        node = _action("collect", variableName="vote", aggregateAs="votes")
        handler = GroupActionHandler(deps)

        first = await handler.execute(make_ctx(node, session=_member("u1", group.id, vote="a")))
        second = await handler.execute(make_ctx(node, session=_member("u2", group.id, vote="b")))
        assert first.outcome == Outcome.WAIT
        assert second.outcome == Outcome.WAIT

        last = await handler.execute(make_ctx(node, session=_member("u3", group.id, vote='{"pick": "c"}')))
        assert last.outcome == Outcome.ADVANCE
        assert group.shared_variables["votes"] == ["a", "b", {"pick": "c"}]
        assert group.shared_variables["votes_late_users"] == []
        assert "ga" not in group.collections

    @pytest.mark.asyncio
    async def test_without_wait_for_all_reports_late_users(self, deps, make_ctx, group_of_three):
        group = await group_of_three()
        node = _action("collect", variableName="vote", waitForAll=False)

        result = await GroupActionHandler(deps).execute(make_ctx(node, session=_member("u2", group.id, vote="7")))

        assert result.outcome == Outcome.ADVANCE
        assert group.shared_variables["vote"] == [7]
        assert group.shared_variables["vote_late_users"] == ["u1", "u3"]

    @pytest.mark.asyncio
    async def test_timeout_stops_waiting(self, deps, groups, make_ctx, group_of_three):
        group = await group_of_three()
        collection = await groups.record_response(group.id, "ga", "u1", "yes")
        collection.started_at -= timedelta(minutes=5)
        node = _action("collect", variableName="vote", aggregateAs="votes", timeout=60)

        result = await GroupActionHandler(deps).execute(make_ctx(node, session=_member("u2", group.id)))

        assert result.outcome == Outcome.ADVANCE
        assert group.shared_variables["votes"] == ["yes"]
        assert group.shared_variables["votes_late_users"] == ["u2", "u3"]


class TestGroupAggregate:

    @pytest.mark.asyncio
    async def test_sum_over_member_sessions(self, deps, sessions, make_ctx, group_of_three):
        group = await group_of_three()
        await sessions.save(_member("u2", group.id, score="4.5"))
        await sessions.save(_member("u3", group.id, score="oops"))
        session = _member("u1", group.id, score="3.5")
        node = _action("aggregate", operation="sum", sourceVariable="score", targetVariable="total")

        await GroupActionHandler(deps).execute(make_ctx(node, session=session))

        assert session.variables["total"] == "8"

    @pytest.mark.asyncio
    async def test_list_skips_members_without_variable(self, deps, sessions, make_ctx, group_of_three):
        group = await group_of_three()
        await sessions.save(_member("u3", group.id, color="red"))
        session = _member("u1", group.id, color="blue")
        node = _action("aggregate", operation="list", sourceVariable="color", targetVariable="colors")

        await GroupActionHandler(deps).execute(make_ctx(node, session=session))

        assert json.loads(session.variables["colors"]) == ["blue", "red"]

    @pytest.mark.asyncio
    async def test_group_scope_reads_and_writes_shared_variables(self, deps, groups, make_ctx, group_of_three):
        group = await group_of_three()
        await groups.update_shared_variables(group.id, {"bids": [10, "30", 20]})
        node = _action("aggregate", operation="max", sourceVariable="bids", targetVariable="top", scope="group")

        await GroupActionHandler(deps).execute(make_ctx(node, session=_member("u1", group.id)))

        assert group.shared_variables["top"] == 30

    @pytest.mark.asyncio
    async def test_group_scope_needs_a_list(self, deps, groups, make_ctx, group_of_three):
        group = await group_of_three()
        await groups.update_shared_variables(group.id, {"bids": "10"})
        node = _action("aggregate", operation="sum", sourceVariable="bids", scope="group")

        with pytest.raises(ValueError, match="not a list"):
            await GroupActionHandler(deps).execute(make_ctx(node, session=_member("u1", group.id)))

    @pytest.mark.asyncio
    async def test_unknown_operation(self, deps, make_ctx, group_of_three):
        group = await group_of_three()
        node = _action("aggregate", operation="median", sourceVariable="x")
        with pytest.raises(ValueError, match="median"):
            await GroupActionHandler(deps).execute(make_ctx(node, session=_member("u1", group.id)))


class TestGroupCondition:

    @pytest.mark.asyncio
    async def test_participant_count(self, deps, make_ctx, group_of_three):
        group = await group_of_three()
        node = _action("condition", field="participantCount", operator="greaterThan", value="2")

        result = await GroupActionHandler(deps).execute(make_ctx(node, session=_member("u1", group.id)))

        assert result.outcome == Outcome.BRANCH
        assert result.handle == "true"

    @pytest.mark.asyncio
    async def test_shared_variable(self, deps, groups, make_ctx, group_of_three):
        group = await group_of_three()
        await groups.update_shared_variables(group.id, {"phase": "lobby"})
        node = _action("condition", field="sharedVariables.phase", operator="equals", value="playing")

        result = await GroupActionHandler(deps).execute(make_ctx(node, session=_member("u1", group.id)))

        assert result.handle == "false"

    @pytest.mark.asyncio
    async def test_missing_shared_variable_is_empty(self, deps, make_ctx, group_of_three):
        group = await group_of_three()
        node = _action("condition", field="sharedVariables.winner", operator="isEmpty")

        result = await GroupActionHandler(deps).execute(make_ctx(node, session=_member("u1", group.id)))

        assert result.handle == "true"
