"""
Configuration loader for the flow engine.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class EngineConfig:
    start_command: str = "/start"
    max_steps_per_event: int = 100         # hard cap on nodes executed per inbound event
    session_ttl_hours: int = 24
    max_inline_delay_seconds: float = 300.0


@dataclass
class WebhookConfig:
    default_timeout: float = 30.0
    user_agent: str = "BotManager-Webhook/1.0"
    max_response_chars: int = 4000


@dataclass
class BroadcastConfig:
    send_delay_ms: int = 50                # minimum pause after each send, per worker
    concurrency: int = 4


@dataclass
class TelegramConfig:
    api_base: str = "https://api.telegram.org"
    rate_per_second: float = 25.0
    burst: int = 30
    timeout: float = 15.0


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./flow_engine.db"          # postgresql:// | mysql:// | sqlite://
    history_backend: str = "memory"                  # "sql" | "memory"


@dataclass
class DatastoreConfig:
    type: str = "memory"                   # "memory" | "rest"
    base_url: str = ""
    api_key: str = ""
    timeout: float = 30.0


@dataclass
class BotConfig:
    id: str
    token: str = ""
    name: str = ""
    username: str = ""


@dataclass
class Settings:
    app_name: str = "FlowEngine"
    debug: bool = False
    timezone: str = "UTC"
    flows_dir: str = "./flows"
    engine: EngineConfig = field(default_factory=EngineConfig)
    webhook: WebhookConfig = field(default_factory=WebhookConfig)
    broadcast: BroadcastConfig = field(default_factory=BroadcastConfig)
    telegram: TelegramConfig = field(default_factory=TelegramConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    datastore: DatastoreConfig = field(default_factory=DatastoreConfig)
    bots: list[BotConfig] = field(default_factory=list)

    def get_bot(self, bot_id: str) -> Optional[BotConfig]:
        return next((b for b in self.bots if b.id == bot_id), None)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _section(cls, raw: dict[str, Any], key: str):
    """Build a config dataclass from a YAML section, ignoring unknown keys."""
    data = raw.get(key) or {}
    known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
    return cls(**known)


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "FLOW_ENGINE_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)
        settings.timezone = raw.get("timezone", settings.timezone)
        settings.flows_dir = raw.get("flows_dir", settings.flows_dir)

        settings.engine = _section(EngineConfig, raw, "engine")
        settings.webhook = _section(WebhookConfig, raw, "webhook")
        settings.broadcast = _section(BroadcastConfig, raw, "broadcast")
        settings.telegram = _section(TelegramConfig, raw, "telegram")
        settings.database = _section(DatabaseConfig, raw, "database")
        settings.datastore = _section(DatastoreConfig, raw, "datastore")

        for bot in raw.get("bots", []):
            settings.bots.append(BotConfig(
                id=str(bot["id"]),
                token=bot.get("token", ""),
                name=bot.get("name", ""),
                username=bot.get("username", ""),
            ))

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
