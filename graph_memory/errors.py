"""Exception hierarchy shared by every memory component."""

from __future__ import annotations

from typing import Any, Dict, Optional


class GraphMemoryError(Exception):
    """Base class for all errors raised by the memory engine."""

    def to_dict(self) -> Dict[str, Any]:
        return {"type": type(self).__name__, "message": str(self)}


class ValidationError(GraphMemoryError):
    """Malformed extraction payload or item (missing/invalid fields)."""

    def __init__(self, message: str, item: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.item = item


class ConflictError(GraphMemoryError):
    """Concurrent fact supersede lost the race more times than allowed."""


class NotFoundError(GraphMemoryError):
    """A referenced entity or fact does not exist (or is no longer active)."""


class DependencyUnavailable(GraphMemoryError):
    """An external collaborator (vector index, embedder, chat model) is unreachable."""


class StoreError(GraphMemoryError):
    """The durable store failed. Never swallowed."""
