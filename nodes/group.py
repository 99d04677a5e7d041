"""
Group nodes — create, join and leave multi-participant lobbies.

Membership is kept by the group session service and mirrored on the
member's ``Session.group_context``.
"""
from __future__ import annotations

import structlog
from typing import Optional

from channels.base import GatewayError
from models.schemas import LobbyData, NodeType
from nodes.base import ExecutionContext, NodeHandler, NodeResult

logger = structlog.get_logger()


def resolve_group_id(source: str, variables: dict[str, str]) -> Optional[str]:
    """``{name}`` reads the session variable ``name``; anything else is a literal id."""
    source = (source or "").strip()
    if source.startswith("{") and source.endswith("}"):
        return variables.get(source.strip("{}").strip()) or None
    return source or None


class GroupCreateHandler(NodeHandler):
    """``data.groupCreate = {variableName?, maxParticipants?, metadata?}``"""

    node_type = NodeType.GROUP_CREATE

    async def execute(self, ctx: ExecutionContext) -> NodeResult:
        config = ctx.data.get("groupCreate")
        if config is None:
            raise ValueError("groupCreate configuration not found")

        group = await self.deps.groups.create(
            ctx.bot.id, ctx.flow.id, ctx.session.user_id,
            max_participants=config.get("maxParticipants"),
            metadata=config.get("metadata") or {},
        )
        if config.get("variableName"):
            ctx.set_var(config["variableName"], group.id)
        ctx.session.group_context = LobbyData(group_session_id=group.id, role="host")
        logger.info("group_created", node_id=ctx.node.id, group_id=group.id, host=ctx.session.user_id)
        return NodeResult.advance()


class GroupJoinHandler(NodeHandler):
    """``data.groupJoin = {groupIdSource, role?, onFullAction=reject|create_new}``"""

    node_type = NodeType.GROUP_JOIN

    async def _notify(self, ctx: ExecutionContext, text: str) -> None:
        try:
            await self.send_and_record(ctx, text)
        except GatewayError as e:
            logger.warning("group_notice_failed", node_id=ctx.node.id, error=str(e))

    async def execute(self, ctx: ExecutionContext) -> NodeResult:
        config = ctx.data.get("groupJoin")
        if config is None:
            raise ValueError("groupJoin configuration not found")

        source = config.get("groupIdSource", "")
        group_id = resolve_group_id(source, ctx.session.variables)
        if not group_id:
            raise ValueError(f"Could not resolve a group id from '{source}'")

        role = config.get("role") or "participant"
        groups = self.deps.groups
        group = await groups.find_by_id(group_id)
        if group is None:
            await self._notify(ctx, "Group not found or no longer exists.")
            return NodeResult.advance()

        if group.is_full and ctx.session.user_id not in group.participant_ids:
            if (config.get("onFullAction") or "reject") == "create_new":
                new_group = await groups.create(
                    ctx.bot.id, ctx.flow.id, ctx.session.user_id,
                    max_participants=group.max_participants,
                    metadata=group.metadata,
                )
                if source.startswith("{") and source.endswith("}"):
                    ctx.set_var(source.strip("{}").strip(), new_group.id)
                ctx.session.group_context = LobbyData(group_session_id=new_group.id, role=role)
                await self._notify(ctx, f"A new group was created. ID: {new_group.id}")
                return NodeResult.advance()
            await self._notify(ctx, "Sorry, the group is full. Please try again later.")
            return NodeResult.advance()

        group = await groups.add_participant(group_id, ctx.session.user_id)
        previous = ctx.session.group_context
        ctx.session.group_context = LobbyData(
            group_session_id=group_id,
            role=role,
            participant_variables=previous.participant_variables if previous else {},
        )
        logger.info("group_joined", node_id=ctx.node.id, group_id=group_id,
                    user_id=ctx.session.user_id, participants=group.participant_count)
        await self._notify(ctx, f"You joined the group. Participants: {group.participant_count}")
        return NodeResult.advance()


class GroupLeaveHandler(NodeHandler):
    """``data.groupLeave = {notifyOthers?, notificationMessage?, cleanupIfEmpty=true}``"""

    node_type = NodeType.GROUP_LEAVE

    async def execute(self, ctx: ExecutionContext) -> NodeResult:
        config = ctx.data.get("groupLeave") or {}
        lobby = ctx.session.group_context
        if lobby is None:
            return NodeResult.advance()

        groups = self.deps.groups
        group_id = lobby.group_session_id
        group = await groups.find_by_id(group_id)
        if group is None:
            ctx.session.group_context = None
            return NodeResult.advance()

        if config.get("notifyOthers"):
            text = config.get("notificationMessage") or \
                f"A participant left the group. Participants left: {group.participant_count - 1}"
            for participant in await groups.get_participant_ids(group_id):
                if participant == ctx.session.user_id:
                    continue
                try:
                    await self.send_and_record(ctx, ctx.render(text), chat_id=participant)
                except GatewayError as e:
                    logger.warning("group_leave_notice_failed", group_id=group_id,
                                   participant=participant, error=str(e))

        remaining = await groups.remove_participant(group_id, ctx.session.user_id)
        ctx.session.group_context = None
        try:
            await self.send_and_record(ctx, "You left the group.")
        except GatewayError as e:
            logger.warning("group_leave_confirmation_failed", group_id=group_id, error=str(e))

        if config.get("cleanupIfEmpty", True) and remaining is not None and remaining.participant_count == 0:
            await groups.archive(group_id)
        logger.info("group_left", node_id=ctx.node.id, group_id=group_id, user_id=ctx.session.user_id)
        return NodeResult.advance()
