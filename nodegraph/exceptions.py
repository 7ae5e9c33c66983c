"""
nodegraph Exceptions
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class NodeGraphError(Exception):
    """Base class for all node-graph errors."""


class NotFoundError(NodeGraphError):
    """A referenced node, field, supertag, query or computed field does not resolve."""

    def __init__(self, kind: str, ref: str, message: Optional[str] = None):
        self.kind = kind
        self.ref = ref
        super().__init__(message or f"{kind.replace('_', ' ').capitalize()} not found: {ref}")


class ValidationError(NodeGraphError):
    """Structurally invalid input or missing system scaffolding."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.details = details or {}
        super().__init__(message)


class BackendNotInitializedError(NodeGraphError):
    """An operation was called before the backend's init()."""

    def __init__(self, backend: str):
        self.backend = backend
        super().__init__(f"{backend} is not initialized; call init() first")
