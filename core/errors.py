"""Error types raised by the flow engine itself."""
from __future__ import annotations


class FlowEngineError(Exception):
    """Base exception for engine failures."""


class FlowValidationError(FlowEngineError):
    """A flow definition is malformed (duplicate ids, dangling edges, bad shape)."""


class RegistryError(FlowEngineError):
    """The node handler registry was built or used incorrectly."""

    def __init__(self, message: str, node_type: str = ""):
        self.node_type = node_type
        super().__init__(message)
