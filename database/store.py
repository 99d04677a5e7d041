"""
SqlMessageHistoryStore — Portable SQL queries for PostgreSQL, MySQL, SQLite.

The ``system_`` chat exclusion is applied in SQL with NOT LIKE; blank ids
are filtered in the same WHERE clause.
"""
from __future__ import annotations

import structlog
from datetime import datetime
from typing import Iterable

from sqlalchemy import select, func, and_

from database.models import MessageRow
from database.session import get_session
from database.store_base import MessageHistoryStore, SYSTEM_CHAT_PREFIX
from models.schemas import HistoryMessage, MessageDirection

logger = structlog.get_logger()


def _addressable():
    return and_(
        MessageRow.chat_id != "",
        MessageRow.chat_id.not_like(f"{SYSTEM_CHAT_PREFIX}%"),
    )


class SqlMessageHistoryStore(MessageHistoryStore):
    """
    Persistent message history backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.
    """

    async def record_message(self, message: HistoryMessage) -> None:
        async with get_session() as db:
            db.add(MessageRow(
                id=message.id,
                bot_id=message.bot_id,
                chat_id=message.chat_id,
                user_id=message.user_id,
                chat_type=message.chat_type,
                direction=message.direction.value,
                text=message.text,
                message_id=message.message_id,
                metadata_=message.metadata,
                created_at=message.created_at,
            ))

    async def distinct_chat_ids(self, bot_id: str, chat_types: Iterable[str] = None) -> list[str]:
        stmt = (
            select(MessageRow.chat_id)
            .where(and_(MessageRow.bot_id == bot_id, _addressable()))
            .distinct()
        )
        types = list(chat_types) if chat_types else None
        if types:
            stmt = stmt.where(MessageRow.chat_type.in_(types))
        async with get_session() as db:
            result = await db.execute(stmt)
            return [row[0] for row in result.all()]

    async def chat_ids_by_activity(
        self,
        bot_id: str,
        cutoff: datetime,
        after: bool = True,
        chat_type: str = None,
    ) -> list[str]:
        last_seen = func.max(MessageRow.created_at)
        stmt = (
            select(MessageRow.chat_id)
            .where(and_(MessageRow.bot_id == bot_id, _addressable()))
            .group_by(MessageRow.chat_id)
            .having(last_seen >= cutoff if after else last_seen <= cutoff)
        )
        if chat_type:
            stmt = stmt.where(MessageRow.chat_type == chat_type)
        async with get_session() as db:
            result = await db.execute(stmt)
            return [row[0] for row in result.all()]

    async def list_messages(self, bot_id: str, chat_id: str, limit: int = 50) -> list[HistoryMessage]:
        stmt = (
            select(MessageRow)
            .where(and_(MessageRow.bot_id == bot_id, MessageRow.chat_id == chat_id))
            .order_by(MessageRow.created_at.desc())
            .limit(limit)
        )
        async with get_session() as db:
            result = await db.execute(stmt)
            rows = list(result.scalars().all())
        return [self._row_to_message(r) for r in reversed(rows)]

    @staticmethod
    def _row_to_message(row: MessageRow) -> HistoryMessage:
        return HistoryMessage(
            id=row.id,
            bot_id=row.bot_id,
            chat_id=row.chat_id,
            user_id=row.user_id or "",
            chat_type=row.chat_type or "private",
            direction=MessageDirection(row.direction),
            text=row.text or "",
            message_id=row.message_id,
            metadata=row.metadata_ or {},
            created_at=row.created_at,
        )
