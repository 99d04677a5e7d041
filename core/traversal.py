"""
Edge resolution — find the node(s) a transition leads to.

Handles name the outputs of multi-output nodes (``"true"``/``"false"``,
``"button-N"``, ``"success"``/``"error"``); an absent handle means the
default output. When no edge matches, the legacy ``nextNodeId`` field
inside the node's data is consulted.
"""
from __future__ import annotations

import re
from typing import Optional

from models.schemas import Flow

BUTTON_HANDLE_RE = re.compile(r"^button-(\d+)$")


def _legacy_next(flow: Flow, node_id: str) -> Optional[str]:
    node = flow.get_node(node_id)
    if node is None:
        return None
    target = node.data.get("nextNodeId")
    if target and flow.get_node(target) is not None:
        return target
    return None


def find_next(flow: Flow, node_id: str, handle: str = None) -> Optional[str]:
    """First edge leaving *node_id* whose handle matches (any handle when unset)."""
    for edge in flow.edges:
        if edge.source == node_id and (handle is None or edge.source_handle == handle):
            return edge.target
    return _legacy_next(flow, node_id)


def find_all_next(flow: Flow, node_id: str, handle: str = None) -> list[str]:
    """Every edge target leaving *node_id* for *handle*, in edge order."""
    targets = [
        e.target for e in flow.edges
        if e.source == node_id and (handle is None or e.source_handle == handle)
    ]
    if targets:
        return targets
    legacy = _legacy_next(flow, node_id)
    return [legacy] if legacy else []


def find_default_next(flow: Flow, node_id: str) -> list[str]:
    """Targets of the default output only: edges without a handle, else ``nextNodeId``."""
    targets = [e.target for e in flow.edges_from(node_id) if not e.source_handle]
    if targets:
        return targets
    legacy = _legacy_next(flow, node_id)
    return [legacy] if legacy else []


def find_next_by_output(flow: Flow, node_id: str, output: str) -> Optional[str]:
    """
    Resolve a named output.

    Exact handle match first. For ``button-N`` outputs on flows whose edges
    were saved without handles, the N-th edge leaving the node stands in
    for the button; failing that, the first edge leaving the node.
    """
    outgoing = flow.edges_from(node_id)
    for edge in outgoing:
        if edge.source_handle == output:
            return edge.target

    match = BUTTON_HANDLE_RE.match(output)
    if match:
        index = int(match.group(1))
        unlabeled = [e for e in outgoing if not e.source_handle]
        if index < len(unlabeled):
            return unlabeled[index].target
        if unlabeled:
            return unlabeled[0].target

    return _legacy_next(flow, node_id)
