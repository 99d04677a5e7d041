"""
Group Session Service — multi-participant lobbies shared by several users.

A group session is created by a host from inside a flow and joined by
other users of the same bot. Membership is mirrored on each member's
``Session.group_context``.
Members share a variable map, and collecting nodes gather one answer per
member before the group moves on.
"""
from __future__ import annotations

import abc
import structlog
from typing import Any, Optional

from models.schemas import GroupCollection, GroupSession

logger = structlog.get_logger()


class GroupSessionService(abc.ABC):

    @abc.abstractmethod
    async def create(self, bot_id: str, flow_id: str, host_user_id: str,
                     max_participants: int = None, metadata: dict[str, Any] = None) -> GroupSession:
        ...

    @abc.abstractmethod
    async def find_by_id(self, group_id: str) -> Optional[GroupSession]:
        ...

    @abc.abstractmethod
    async def add_participant(self, group_id: str, user_id: str) -> GroupSession:
        ...

    @abc.abstractmethod
    async def remove_participant(self, group_id: str, user_id: str) -> Optional[GroupSession]:
        ...

    @abc.abstractmethod
    async def archive(self, group_id: str) -> None:
        ...

    @abc.abstractmethod
    async def update_shared_variables(self, group_id: str, values: dict[str, Any]) -> None:
        ...

    @abc.abstractmethod
    async def open_collection(self, group_id: str, action_id: str) -> GroupCollection:
        """The running collection for *action_id*, started now if there is none."""

    @abc.abstractmethod
    async def record_response(self, group_id: str, action_id: str, user_id: str, value: Any) -> GroupCollection:
        ...

    @abc.abstractmethod
    async def close_collection(self, group_id: str, action_id: str) -> None:
        ...

    async def get_participant_ids(self, group_id: str) -> list[str]:
        group = await self.find_by_id(group_id)
        return list(group.participant_ids) if group else []


class InMemoryGroupSessionService(GroupSessionService):

    def __init__(self):
        self._groups: dict[str, GroupSession] = {}

    async def create(self, bot_id: str, flow_id: str, host_user_id: str,
                     max_participants: int = None, metadata: dict[str, Any] = None) -> GroupSession:
        group = GroupSession(
            bot_id=bot_id,
            flow_id=flow_id,
            host_user_id=host_user_id,
            participant_ids=[host_user_id],
            max_participants=max_participants,
            metadata=metadata or {},
        )
        self._groups[group.id] = group
        logger.info("group_session_created", group_id=group.id, bot_id=bot_id, host=host_user_id)
        return group

    async def find_by_id(self, group_id: str) -> Optional[GroupSession]:
        group = self._groups.get(group_id)
        if group is None or group.status != "active":
            return None
        return group

    async def add_participant(self, group_id: str, user_id: str) -> GroupSession:
        group = await self.find_by_id(group_id)
        if group is None:
            raise KeyError(f"Group session '{group_id}' not found")
        if user_id in group.participant_ids:
            return group
        if group.is_full:
            raise ValueError(f"Group session '{group_id}' is full")
        group.participant_ids.append(user_id)
        logger.info("group_participant_added", group_id=group_id, user_id=user_id,
                    participants=group.participant_count)
        return group

    async def remove_participant(self, group_id: str, user_id: str) -> Optional[GroupSession]:
        group = await self.find_by_id(group_id)
        if group is None:
            return None
        if user_id in group.participant_ids:
            group.participant_ids.remove(user_id)
            logger.info("group_participant_removed", group_id=group_id, user_id=user_id,
                        participants=group.participant_count)
        return group

    async def archive(self, group_id: str) -> None:
        group = self._groups.get(group_id)
        if group is not None:
            group.status = "archived"
            logger.info("group_session_archived", group_id=group_id)

    def _require(self, group_id: str) -> GroupSession:
        group = self._groups.get(group_id)
        if group is None or group.status != "active":
            raise KeyError(f"Group session '{group_id}' not found")
        return group

    async def update_shared_variables(self, group_id: str, values: dict[str, Any]) -> None:
        self._require(group_id).shared_variables.update(values)
        logger.debug("group_shared_variables_updated", group_id=group_id, keys=sorted(values))

    async def open_collection(self, group_id: str, action_id: str) -> GroupCollection:
        collections = self._require(group_id).collections
        if action_id not in collections:
            collections[action_id] = GroupCollection()
        return collections[action_id]

    async def record_response(self, group_id: str, action_id: str, user_id: str, value: Any) -> GroupCollection:
        collection = await self.open_collection(group_id, action_id)
        collection.responses[user_id] = value
        return collection

    async def close_collection(self, group_id: str, action_id: str) -> None:
        self._require(group_id).collections.pop(action_id, None)
