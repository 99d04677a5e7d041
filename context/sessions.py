"""
Session Store — per (bot, end-user) execution state carried between events.

The store holds the ``Session`` a flow runs against: the current node,
the variable map, and any group-lobby membership. ``SessionLocks`` provides
one asyncio lock per session key so only one inbound event executes
against a session at a time; duplicate webhook deliveries and rapid
double-taps queue up behind each other instead of interleaving writes.
"""
from __future__ import annotations

import abc
import asyncio
import structlog
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Optional

from models.schemas import Session

logger = structlog.get_logger()

SessionKey = tuple[str, str]


class SessionStore(abc.ABC):
    """Interface every session backend implements."""

    @abc.abstractmethod
    async def get(self, bot_id: str, user_id: str) -> Optional[Session]:
        ...

    @abc.abstractmethod
    async def save(self, session: Session) -> None:
        ...

    @abc.abstractmethod
    async def delete(self, bot_id: str, user_id: str) -> bool:
        ...

    @abc.abstractmethod
    async def cleanup(self, max_age: timedelta) -> int:
        """Drop sessions idle for longer than *max_age*. Returns how many were removed."""
        ...

    async def get_or_create(self, bot_id: str, user_id: str, chat_id: str = "") -> Session:
        session = await self.get(bot_id, user_id)
        if session is None:
            session = Session(bot_id=bot_id, user_id=user_id, chat_id=chat_id or user_id)
            await self.save(session)
            logger.info("session_created", bot_id=bot_id, user_id=user_id)
        elif chat_id and session.chat_id != chat_id:
            session.chat_id = chat_id
        return session


class InMemorySessionStore(SessionStore):
    """Dict-backed session store. Single process, no persistence."""

    def __init__(self):
        self._sessions: dict[SessionKey, Session] = {}

    async def get(self, bot_id: str, user_id: str) -> Optional[Session]:
        return self._sessions.get((bot_id, user_id))

    async def save(self, session: Session) -> None:
        self._sessions[session.key] = session

    async def delete(self, bot_id: str, user_id: str) -> bool:
        removed = self._sessions.pop((bot_id, user_id), None)
        if removed:
            logger.info("session_removed", bot_id=bot_id, user_id=user_id)
        return removed is not None

    async def cleanup(self, max_age: timedelta) -> int:
        cutoff = datetime.now(timezone.utc) - max_age
        stale = [k for k, s in self._sessions.items() if s.last_activity < cutoff]
        for key in stale:
            del self._sessions[key]
        if stale:
            logger.info("sessions_cleaned_up", removed=len(stale))
        return len(stale)

    def list_for_bot(self, bot_id: str) -> list[Session]:
        return [s for s in self._sessions.values() if s.bot_id == bot_id]

    @property
    def count(self) -> int:
        return len(self._sessions)


class SessionLocks:
    """
    Keyed mutex table: one ``asyncio.Lock`` per session key.

    Entries are reference counted and dropped once nobody holds or waits
    on them, so the table only grows with concurrently active sessions.
    """

    def __init__(self):
        self._locks: dict[SessionKey, asyncio.Lock] = {}
        self._users: dict[SessionKey, int] = {}

    @asynccontextmanager
    async def hold(self, key: SessionKey) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def is_locked(self, key: SessionKey) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)
