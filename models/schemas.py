"""
Core data models for the flow engine.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, model_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class NodeType(str, Enum):
    """Closed set of node types the engine knows how to execute."""
    START = "start"
    NEW_MESSAGE = "new_message"
    MESSAGE = "message"
    KEYBOARD = "keyboard"
    CONDITION = "condition"
    WEBHOOK = "webhook"
    DATABASE = "database"
    RANDOM = "random"
    BROADCAST = "broadcast"
    VARIABLE = "variable"
    PERIODIC_CONTROL = "periodic_control"
    GROUP_CREATE = "group_create"
    GROUP_JOIN = "group_join"
    GROUP_LEAVE = "group_leave"
    DELAY = "delay"
    CALCULATOR = "calculator"
    FILE = "file"
    FORM = "form"
    LOCATION = "location"
    GROUP_ACTION = "group_action"
    END = "end"


class ContentType(str, Enum):
    TEXT = "text"
    PHOTO = "photo"
    VIDEO = "video"
    AUDIO = "audio"
    DOCUMENT = "document"
    STICKER = "sticker"
    VOICE = "voice"
    LOCATION = "location"
    CONTACT = "contact"


class MessageDirection(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


# ──────────────────────────────────────────────────────────────
#  Flow graph — nodes, edges, flow
# ──────────────────────────────────────────────────────────────

class Node(BaseModel):
    """One step of a flow graph: a type tag plus type-specific configuration."""
    model_config = ConfigDict(frozen=True)

    id: str
    type: str
    data: dict[str, Any] = {}

    @property
    def node_type(self) -> Optional[NodeType]:
        try:
            return NodeType(self.type)
        except ValueError:
            return None


class Edge(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    source: str
    target: str
    source_handle: Optional[str] = Field(default=None, alias="sourceHandle")


class Flow(BaseModel):
    """
    An immutable graph of nodes and edges bound to one bot.

    Validation guarantees node ids are unique and every edge endpoint
    references an existing node.
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:16])
    bot_id: str = Field(default="", alias="botId")
    name: str = ""
    nodes: tuple[Node, ...] = ()
    edges: tuple[Edge, ...] = ()

    _by_id: dict[str, Node] = PrivateAttr(default_factory=dict)

    @model_validator(mode="after")
    def _check_graph(self) -> "Flow":
        seen: set[str] = set()
        for node in self.nodes:
            if node.id in seen:
                raise ValueError(f"Duplicate node id '{node.id}'")
            seen.add(node.id)
        for edge in self.edges:
            if edge.source not in seen:
                raise ValueError(f"Edge source '{edge.source}' is not a node of the flow")
            if edge.target not in seen:
                raise ValueError(f"Edge target '{edge.target}' is not a node of the flow")
        return self

    def model_post_init(self, __context: Any) -> None:
        self._by_id = {n.id: n for n in self.nodes}

    def get_node(self, node_id: Optional[str]) -> Optional[Node]:
        if node_id is None:
            return None
        return self._by_id.get(node_id)

    def nodes_of_type(self, node_type: NodeType) -> list[Node]:
        return [n for n in self.nodes if n.type == node_type.value]

    def edges_from(self, node_id: str) -> list[Edge]:
        return [e for e in self.edges if e.source == node_id]

    @classmethod
    def from_wire(cls, payload: dict[str, Any], bot_id: str = "", flow_id: str = None) -> "Flow":
        """Build a flow from the editor wire shape ``{nodes: [...], edges: [...]}``."""
        from core.errors import FlowValidationError
        from pydantic import ValidationError

        data = dict(payload)
        if bot_id:
            data["bot_id"] = bot_id
        if flow_id:
            data["id"] = flow_id
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise FlowValidationError(str(e)) from e


# ──────────────────────────────────────────────────────────────
#  Bot identity and inbound events
# ──────────────────────────────────────────────────────────────

class BotIdentity(BaseModel):
    id: str
    token: str = ""
    name: str = ""
    username: str = ""


class EventUser(BaseModel):
    id: str
    first_name: str = ""
    last_name: str = ""
    username: str = ""


class EventChat(BaseModel):
    id: str
    type: str = "private"                     # private | group | supergroup | channel
    title: str = ""


class CallbackQuery(BaseModel):
    """A press of an inline keyboard button."""
    id: str = ""
    data: str = ""
    message_id: Optional[str] = None          # message carrying the pressed keyboard


class GeoPoint(BaseModel):
    latitude: float
    longitude: float


class InboundEvent(BaseModel):
    """A message or button callback delivered to a bot by an end-user."""
    user: EventUser
    chat: EventChat
    text: Optional[str] = None
    content_type: ContentType = ContentType.TEXT
    message_id: Optional[str] = None
    callback: Optional[CallbackQuery] = None
    location: Optional[GeoPoint] = None
    timestamp: datetime = Field(default_factory=_utcnow)

    @property
    def is_callback(self) -> bool:
        return self.callback is not None

    def consumed(self) -> "InboundEvent":
        """Copy of this event with its text and callback removed."""
        return self.model_copy(update={"text": None, "callback": None})

    @classmethod
    def from_telegram_update(cls, update: dict[str, Any]) -> Optional["InboundEvent"]:
        """Translate a Telegram Bot API update. Returns None for unsupported updates."""
        if "callback_query" in update:
            cq = update["callback_query"]
            message = cq.get("message") or {}
            chat = message.get("chat") or {}
            sender = cq.get("from") or {}
            return cls(
                user=_telegram_user(sender),
                chat=EventChat(
                    id=str(chat.get("id", sender.get("id", ""))),
                    type=chat.get("type", "private"),
                    title=chat.get("title", ""),
                ),
                text=cq.get("data"),
                message_id=str(message["message_id"]) if "message_id" in message else None,
                callback=CallbackQuery(
                    id=str(cq.get("id", "")),
                    data=cq.get("data", ""),
                    message_id=str(message["message_id"]) if "message_id" in message else None,
                ),
            )

        message = update.get("message") or update.get("edited_message")
        if not message:
            return None
        chat = message.get("chat") or {}
        sender = message.get("from") or {}
        return cls(
            user=_telegram_user(sender),
            chat=EventChat(
                id=str(chat.get("id", "")),
                type=chat.get("type", "private"),
                title=chat.get("title", ""),
            ),
            text=message.get("text", message.get("caption")),
            content_type=_telegram_content_type(message),
            message_id=str(message["message_id"]) if "message_id" in message else None,
            location=_telegram_location(message),
            timestamp=(
                datetime.fromtimestamp(message["date"], tz=timezone.utc)
                if "date" in message else _utcnow()
            ),
        )


def _telegram_user(sender: dict[str, Any]) -> EventUser:
    return EventUser(
        id=str(sender.get("id", "")),
        first_name=sender.get("first_name", ""),
        last_name=sender.get("last_name", ""),
        username=sender.get("username", ""),
    )


def _telegram_location(message: dict[str, Any]) -> Optional[GeoPoint]:
    point = message.get("location")
    if not isinstance(point, dict) or "latitude" not in point or "longitude" not in point:
        return None
    return GeoPoint(latitude=point["latitude"], longitude=point["longitude"])


def _telegram_content_type(message: dict[str, Any]) -> ContentType:
    for ct in (ContentType.PHOTO, ContentType.VIDEO, ContentType.AUDIO, ContentType.DOCUMENT,
               ContentType.STICKER, ContentType.VOICE, ContentType.LOCATION, ContentType.CONTACT):
        if message.get(ct.value):
            return ct
    return ContentType.TEXT


# ──────────────────────────────────────────────────────────────
#  Session — per (bot, end-user) execution state
# ──────────────────────────────────────────────────────────────

class LobbyData(BaseModel):
    """Group-session membership attached to a user's session."""
    group_session_id: str
    role: str = "participant"                 # host | participant
    joined_at: datetime = Field(default_factory=_utcnow)
    participant_variables: dict[str, Any] = {}


class Session(BaseModel):
    bot_id: str
    user_id: str
    chat_id: str = ""
    current_node_id: Optional[str] = None
    variables: dict[str, str] = {}
    group_context: Optional[LobbyData] = None
    created_at: datetime = Field(default_factory=_utcnow)
    last_activity: datetime = Field(default_factory=_utcnow)

    @property
    def key(self) -> tuple[str, str]:
        return (self.bot_id, self.user_id)

    def set_variable(self, name: str, value: Any) -> None:
        self.variables[name] = value if isinstance(value, str) else str(value)

    def get_variable(self, name: str, default: str = None) -> Optional[str]:
        return self.variables.get(name, default)

    def touch(self) -> None:
        self.last_activity = _utcnow()


# ──────────────────────────────────────────────────────────────
#  Collaborator payloads
# ──────────────────────────────────────────────────────────────

class HistoryMessage(BaseModel):
    """One inbound or outbound message, as kept by the message history store."""
    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:16])
    bot_id: str
    chat_id: str
    user_id: str = ""
    chat_type: str = "private"
    direction: MessageDirection
    text: str = ""
    message_id: Optional[str] = None
    metadata: dict[str, Any] = {}
    created_at: datetime = Field(default_factory=_utcnow)


class DatabaseQueryConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    data_source: str = Field(default="bot_data", alias="dataSource")   # bot_data | custom_storage
    table: Optional[str] = None
    collection: Optional[str] = None
    operation: str = "select"                 # select | insert | update | delete | count
    where: Optional[str] = None
    key: Optional[str] = None
    data: Optional[Any] = None
    limit: Optional[int] = None
    offset: Optional[int] = None
    order_by: Optional[str] = Field(default=None, alias="orderBy")


class DatabaseQueryResult(BaseModel):
    success: bool
    data: Any = None
    count: int = 0
    error: Optional[str] = None


class PeriodicTaskStatus(BaseModel):
    status: str
    execution_count: int = 0
    last_executed_at: Optional[datetime] = None


class GroupCollection(BaseModel):
    """Answers gathered from group members by one collecting node."""
    started_at: datetime = Field(default_factory=_utcnow)
    responses: dict[str, Any] = {}            # user id -> answer


class GroupSession(BaseModel):
    """A multi-participant lobby scoped to one flow."""
    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:16])
    bot_id: str
    flow_id: str
    host_user_id: str
    participant_ids: list[str] = []
    max_participants: Optional[int] = None
    status: str = "active"                    # active | archived
    metadata: dict[str, Any] = {}
    shared_variables: dict[str, Any] = {}
    collections: dict[str, GroupCollection] = {}
    created_at: datetime = Field(default_factory=_utcnow)

    @property
    def participant_count(self) -> int:
        return len(self.participant_ids)

    @property
    def is_full(self) -> bool:
        return self.max_participants is not None and self.participant_count >= self.max_participants
