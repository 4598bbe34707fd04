"""Engine error taxonomy.

Every error carries a stable string ``code`` the caller can branch on, a
human-readable ``message`` and free-form ``details``. The HTTP layer maps
``status_code`` onto the response.

Graph validation problems are never raised: they are returned as
``ValidationIssue`` entries of a ``ValidationResult``.
"""

from __future__ import annotations


class EngineError(Exception):
    """Base class for all execflow errors."""

    code = "ENGINE_ERROR"
    status_code = 500

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details or {}

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "details": self.details}


class NotFoundError(EngineError):
    """Execution, graph, node or checkpoint id not found."""

    code = "NOT_FOUND"
    status_code = 404


class ConflictError(EngineError):
    """Duplicate id on create."""

    code = "CONFLICT"
    status_code = 409


class StateError(EngineError):
    """Operation invalid for the record's current status."""

    code = "INVALID_STATE"
    status_code = 409


class InvalidGraphError(EngineError):
    """A graph failed validation and cannot be stored or executed."""

    code = "INVALID_GRAPH"
    status_code = 422


class StorageError(EngineError):
    """The storage collaborator failed; nothing was partially written."""

    code = "STORAGE_ERROR"
    status_code = 503
