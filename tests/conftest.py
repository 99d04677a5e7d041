"""Shared test fixtures for the flow engine."""
import random
from dataclasses import replace

import httpx
import pytest

from backend.datastore import InMemoryDatastore
from backend.flows import InMemoryFlowRepository
from backend.groups import InMemoryGroupSessionService
from backend.periodic import InMemoryPeriodicTaskService
from channels.memory import InMemoryGateway
from config.settings import BotConfig, Settings
from context.sessions import InMemorySessionStore
from core.controller import FlowExecutionController
from database.store_memory import InMemoryMessageHistoryStore
from models.schemas import BotIdentity, Flow, InboundEvent, Node, Session
from nodes.base import ExecutionContext, HandlerDeps
from nodes.registry import build_registry

from builders import make_event, make_flow


class RecordingSleep:
    """Stands in for asyncio.sleep; remembers every requested delay."""

    def __init__(self):
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def _ok_handler(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json={"ok": True})


@pytest.fixture
def settings() -> Settings:
    return Settings(bots=[BotConfig(id="bot-1", token="TOKEN", name="Demo", username="demo_bot")])


@pytest.fixture
def bot() -> BotIdentity:
    return BotIdentity(id="bot-1", token="TOKEN", name="Demo", username="demo_bot")


@pytest.fixture
def gateway() -> InMemoryGateway:
    return InMemoryGateway()


@pytest.fixture
def history() -> InMemoryMessageHistoryStore:
    return InMemoryMessageHistoryStore()


@pytest.fixture
def datastore() -> InMemoryDatastore:
    return InMemoryDatastore()


@pytest.fixture
def periodic() -> InMemoryPeriodicTaskService:
    return InMemoryPeriodicTaskService()


@pytest.fixture
def groups() -> InMemoryGroupSessionService:
    return InMemoryGroupSessionService()


@pytest.fixture
def sleeper() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def deps(settings, gateway, history, datastore, periodic, groups, sessions, sleeper) -> HandlerDeps:
    return HandlerDeps(
        settings=settings,
        gateway=gateway,
        history=history,
        datastore=datastore,
        periodic_tasks=periodic,
        groups=groups,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(_ok_handler)),
        sessions=sessions,
        sleep=sleeper,
        rng=random.Random(1234),
    )


@pytest.fixture
def deps_with(deps):
    """Copy of the dependency bundle with some collaborators swapped."""
    def factory(**overrides) -> HandlerDeps:
        return replace(deps, **overrides)
    return factory


@pytest.fixture
def make_ctx(bot):
    def factory(node: Node, event: InboundEvent = None, session: Session = None,
                flow: Flow = None, reached: bool = False) -> ExecutionContext:
        event = event or make_event("hello")
        return ExecutionContext(
            bot=bot,
            event=event,
            session=session or Session(bot_id=bot.id, user_id=event.user.id, chat_id=event.chat.id),
            flow=flow or make_flow([node]),
            node=node,
            reached_through_transition=reached,
        )
    return factory


@pytest.fixture
def flows() -> InMemoryFlowRepository:
    return InMemoryFlowRepository()


@pytest.fixture
def sessions() -> InMemorySessionStore:
    return InMemorySessionStore()


@pytest.fixture
def controller(flows, sessions, deps) -> FlowExecutionController:
    return FlowExecutionController(flows=flows, sessions=sessions, registry=build_registry(deps), deps=deps)
