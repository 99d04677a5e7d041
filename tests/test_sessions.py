"""Tests for the session store and per-session locks."""
import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from context.sessions import InMemorySessionStore, SessionLocks
from models.schemas import Session


class TestInMemorySessionStore:

    @pytest.mark.asyncio
    async def test_get_or_create(self):
        store = InMemorySessionStore()
        first = await store.get_or_create("bot-1", "u1", "c1")
        first.set_variable("name", "Ann")
        again = await store.get_or_create("bot-1", "u1")

        assert again is first
        assert again.chat_id == "c1"
        assert again.variables == {"name": "Ann"}
        assert store.count == 1

    @pytest.mark.asyncio
    async def test_chat_id_defaults_to_user(self):
        store = InMemorySessionStore()
        assert (await store.get_or_create("bot-1", "u9")).chat_id == "u9"

    @pytest.mark.asyncio
    async def test_variables_are_strings(self):
        session = Session(bot_id="bot-1", user_id="u1")
        session.set_variable("count", 3)
        session.set_variable("flag", True)
        assert session.variables == {"count": "3", "flag": "True"}

    @pytest.mark.asyncio
    async def test_cleanup_drops_idle_sessions(self):
        store = InMemorySessionStore()
        stale = Session(bot_id="bot-1", user_id="old",
                        last_activity=datetime.now(timezone.utc) - timedelta(hours=30))
        await store.save(stale)
        await store.get_or_create("bot-1", "fresh")

        assert await store.cleanup(timedelta(hours=24)) == 1
        assert await store.get("bot-1", "old") is None
        assert await store.get("bot-1", "fresh") is not None

    @pytest.mark.asyncio
    async def test_delete(self):
        store = InMemorySessionStore()
        await store.get_or_create("bot-1", "u1")
        assert await store.delete("bot-1", "u1") is True
        assert await store.delete("bot-1", "u1") is False


class TestSessionLocks:

    @pytest.mark.asyncio
    async def test_same_key_is_serialized(self):
        locks = SessionLocks()
        order = []

        async def work(tag):
            async with locks.hold(("bot-1", "u1")):
                order.append(f"{tag}-in")
                await asyncio.sleep(0.01)
                order.append(f"{tag}-out")

        await asyncio.gather(work("a"), work("b"))
        assert order == ["a-in", "a-out", "b-in", "b-out"]

    @pytest.mark.asyncio
    async def test_different_keys_overlap(self):
        locks = SessionLocks()
        active = 0
        peak = 0

        async def work(user):
            nonlocal active, peak
            async with locks.hold(("bot-1", user)):
                active += 1
                peak = max(peak, active)
                await asyncio.sleep(0.01)
                active -= 1

        await asyncio.gather(work("u1"), work("u2"))
        assert peak == 2

    @pytest.mark.asyncio
    async def test_entries_released(self):
        locks = SessionLocks()
        async with locks.hold(("bot-1", "u1")):
            assert locks.is_locked(("bot-1", "u1"))
            assert len(locks) == 1
        assert len(locks) == 0
        assert not locks.is_locked(("bot-1", "u1"))

    @pytest.mark.asyncio
    async def test_released_on_error(self):
        locks = SessionLocks()
        with pytest.raises(RuntimeError):
            async with locks.hold(("bot-1", "u1")):
                raise RuntimeError("boom")
        assert len(locks) == 0
