"""
InMemoryMessageHistoryStore — Dict-based history for development and testing.

No persistence. All data lost on restart. Single-process only.
"""
from __future__ import annotations

import structlog
from datetime import datetime
from typing import Iterable

from database.store_base import MessageHistoryStore, is_addressable_chat
from models.schemas import HistoryMessage

logger = structlog.get_logger()


class InMemoryMessageHistoryStore(MessageHistoryStore):

    def __init__(self):
        self._messages: list[HistoryMessage] = []

    async def record_message(self, message: HistoryMessage) -> None:
        self._messages.append(message)

    async def distinct_chat_ids(self, bot_id: str, chat_types: Iterable[str] = None) -> list[str]:
        types = set(chat_types) if chat_types else None
        seen: dict[str, None] = {}
        for m in self._messages:
            if m.bot_id != bot_id or not is_addressable_chat(m.chat_id):
                continue
            if types is not None and m.chat_type not in types:
                continue
            seen.setdefault(m.chat_id, None)
        return list(seen)

    async def chat_ids_by_activity(
        self,
        bot_id: str,
        cutoff: datetime,
        after: bool = True,
        chat_type: str = None,
    ) -> list[str]:
        latest: dict[str, datetime] = {}
        for m in self._messages:
            if m.bot_id != bot_id or not is_addressable_chat(m.chat_id):
                continue
            if chat_type and m.chat_type != chat_type:
                continue
            if m.chat_id not in latest or m.created_at > latest[m.chat_id]:
                latest[m.chat_id] = m.created_at
        if after:
            return [cid for cid, ts in latest.items() if ts >= cutoff]
        return [cid for cid, ts in latest.items() if ts <= cutoff]

    async def list_messages(self, bot_id: str, chat_id: str, limit: int = 50) -> list[HistoryMessage]:
        matching = [m for m in self._messages if m.bot_id == bot_id and m.chat_id == chat_id]
        return matching[-limit:]

    @property
    def count(self) -> int:
        return len(self._messages)
