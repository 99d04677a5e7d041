"""Builders for flows and inbound events used across the test suite."""
from typing import Any

from models.schemas import CallbackQuery, Edge, EventChat, EventUser, Flow, InboundEvent, Node


def make_node(node_id: str, node_type: str, **data) -> Node:
    return Node(id=node_id, type=node_type, data=data)


def make_flow(nodes: list[Node], edges: list[tuple] = (), flow_id: str = "flow-1") -> Flow:
    """Edges are ``(source, target)`` or ``(source, target, handle)`` tuples."""
    built = []
    for edge in edges:
        source, target, *handle = edge
        built.append(Edge(source=source, target=target, source_handle=handle[0] if handle else None))
    return Flow(id=flow_id, bot_id="bot-1", nodes=tuple(nodes), edges=tuple(built))


def make_event(
    text: str = None,
    user_id: str = "u1",
    chat_id: str = None,
    first_name: str = "Ann",
    callback_data: str = None,
    callback_message_id: str = None,
    **extra: Any,
) -> InboundEvent:
    callback = None
    if callback_data is not None:
        callback = CallbackQuery(id="cb-1", data=callback_data, message_id=callback_message_id)
        text = text if text is not None else callback_data
    return InboundEvent(
        user=EventUser(id=user_id, first_name=first_name, username="ann"),
        chat=EventChat(id=chat_id or user_id),
        text=text,
        callback=callback,
        **extra,
    )
