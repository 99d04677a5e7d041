"""
FastAPI Application — inbound webhooks for the flow engine.

Provides:
- Telegram webhook endpoint per bot; each update runs through the bot's flow
- Flow upload endpoint (editor wire shape) for the in-memory flow repository
- Health endpoint
- Background sweep of idle sessions
"""
from __future__ import annotations

import asyncio
import structlog
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

import httpx
from fastapi import BackgroundTasks, FastAPI, HTTPException, Request

from backend.datastore import create_datastore
from backend.flows import InMemoryFlowRepository
from backend.groups import InMemoryGroupSessionService
from backend.periodic import InMemoryPeriodicTaskService
from channels.base import MessagingGateway
from channels.telegram import TelegramGateway
from config.settings import Settings, get_settings
from context.sessions import InMemorySessionStore
from core.controller import FlowExecutionController
from core.errors import FlowValidationError
from database.session import close_db, init_db
from database.store_factory import create_history_store
from models.schemas import BotIdentity, InboundEvent
from nodes.base import HandlerDeps
from nodes.registry import build_registry

logger = structlog.get_logger()

SESSION_SWEEP_INTERVAL_SECONDS = 600


# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────

@dataclass
class Runtime:
    settings: Settings
    controller: FlowExecutionController
    flows: InMemoryFlowRepository
    deps: HandlerDeps


def build_runtime(settings: Settings = None, gateway: MessagingGateway = None) -> Runtime:
    """Wire collaborators, handler registry and controller from settings."""
    settings = settings or get_settings()
    deps = HandlerDeps(
        settings=settings,
        gateway=gateway or TelegramGateway(settings.telegram),
        history=create_history_store({"history_backend": settings.database.history_backend}),
        datastore=create_datastore(settings.datastore),
        periodic_tasks=InMemoryPeriodicTaskService(),
        groups=InMemoryGroupSessionService(),
        http_client=httpx.AsyncClient(timeout=settings.webhook.default_timeout),
        sessions=InMemorySessionStore(),
    )
    flows = InMemoryFlowRepository()
    flows.load_directory(settings.flows_dir)
    controller = FlowExecutionController(
        flows=flows,
        sessions=deps.sessions,
        registry=build_registry(deps),
        deps=deps,
    )
    return Runtime(settings=settings, controller=controller, flows=flows, deps=deps)


async def _sweep_sessions(controller: FlowExecutionController, interval: float):
    while True:
        await asyncio.sleep(interval)
        try:
            await controller.cleanup_sessions()
        except Exception as e:
            logger.error("session_sweep_failed", error=str(e))


def _bot_identity(settings: Settings, bot_id: str) -> BotIdentity:
    bot = settings.get_bot(bot_id)
    if bot is None:
        raise HTTPException(404, f"Unknown bot '{bot_id}'")
    return BotIdentity(id=bot.id, token=bot.token, name=bot.name, username=bot.username)


def create_app(runtime: Runtime = None) -> FastAPI:

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        rt = runtime or build_runtime()
        app.state.runtime = rt
        if rt.settings.database.history_backend == "sql":
            await init_db(rt.settings.database.url)

        sweeper = asyncio.create_task(_sweep_sessions(rt.controller, SESSION_SWEEP_INTERVAL_SECONDS))
        logger.info("flow_engine_started", app=rt.settings.app_name, bots=len(rt.settings.bots))
        yield

        sweeper.cancel()
        await rt.deps.http_client.aclose()
        await rt.deps.gateway.close()
        await rt.deps.datastore.close()
        if rt.settings.database.history_backend == "sql":
            await close_db()
        logger.info("flow_engine_stopped")

    app = FastAPI(
        title="Flow Engine API",
        description="Chat-bot flow execution engine",
        version="0.1.0",
        lifespan=lifespan,
    )

    # ══════════════════════════════════════════════════════════
    #  HEALTH
    # ══════════════════════════════════════════════════════════

    @app.get("/health")
    async def health(request: Request):
        rt: Runtime = request.app.state.runtime
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "bots": [b.id for b in rt.settings.bots],
            "handlers": len(rt.controller.registry),
        }

    # ══════════════════════════════════════════════════════════
    #  WEBHOOKS — Telegram
    # ══════════════════════════════════════════════════════════

    @app.post("/webhooks/telegram/{bot_id}")
    async def telegram_webhook(bot_id: str, request: Request, background: BackgroundTasks):
        rt: Runtime = request.app.state.runtime
        bot = _bot_identity(rt.settings, bot_id)
        update: dict[str, Any] = await request.json()

        event = InboundEvent.from_telegram_update(update)
        if event is None:
            logger.debug("telegram_update_ignored", bot_id=bot_id, keys=list(update.keys()))
            return {"ok": True, "processed": False}

        background.add_task(rt.controller.process_event, bot, event)
        return {"ok": True, "processed": True}

    # ══════════════════════════════════════════════════════════
    #  FLOWS
    # ══════════════════════════════════════════════════════════

    @app.put("/api/v1/bots/{bot_id}/flow")
    async def upload_flow(bot_id: str, request: Request):
        rt: Runtime = request.app.state.runtime
        _bot_identity(rt.settings, bot_id)
        payload = await request.json()
        try:
            flow = rt.flows.load_wire(bot_id, payload, flow_id=payload.get("id"))
        except FlowValidationError as e:
            raise HTTPException(422, str(e))
        return {"flow_id": flow.id, "nodes": len(flow.nodes), "edges": len(flow.edges)}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
