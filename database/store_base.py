"""
Abstract Message History Store — interface for all history backends.

Implementations:
  - SqlMessageHistoryStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryMessageHistoryStore (dict-based, single-process, no persistence)

Broadcast recipient resolution reads chat ids from here, so every query
skips blank ids and internal ``system_`` chats.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Iterable, Optional

from models.schemas import HistoryMessage

SYSTEM_CHAT_PREFIX = "system_"


def is_addressable_chat(chat_id: Optional[str]) -> bool:
    """False for blank ids and internal system chats."""
    return bool(chat_id and chat_id.strip()) and not chat_id.startswith(SYSTEM_CHAT_PREFIX)


class MessageHistoryStore(ABC):
    """Interface that all message history backends must implement."""

    @abstractmethod
    async def record_message(self, message: HistoryMessage) -> None:
        ...

    @abstractmethod
    async def distinct_chat_ids(self, bot_id: str, chat_types: Iterable[str] = None) -> list[str]:
        """Every chat the bot has exchanged messages with, optionally limited to chat types."""
        ...

    @abstractmethod
    async def chat_ids_by_activity(
        self,
        bot_id: str,
        cutoff: datetime,
        after: bool = True,
        chat_type: str = None,
    ) -> list[str]:
        """Chats whose most recent message is at/after (or at/before) *cutoff*."""
        ...

    @abstractmethod
    async def list_messages(self, bot_id: str, chat_id: str, limit: int = 50) -> list[HistoryMessage]:
        ...
