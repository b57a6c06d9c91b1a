"""Exception hierarchy for the note collector persistence layer.

Every error carries a human-readable message plus a details mapping so the
HTTP layer can turn it into a JSON body without knowing the concrete type.
"""

from __future__ import annotations

from typing import Any, Optional


class NoteCollectorError(Exception):
    """Base exception for all persistence errors."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to a dictionary for serialization."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
        }


class InitializationError(NoteCollectorError):
    """Storage directory unwritable or database unopenable."""


class NotFoundError(NoteCollectorError):
    """Raised when a theme, note or preset id does not exist."""

    def __init__(self, entity: str, entity_id: str) -> None:
        super().__init__(
            f"{entity.capitalize()} '{entity_id}' not found",
            details={"entity": entity, "id": entity_id},
        )
        self.entity = entity
        self.entity_id = entity_id


class ValidationError(NoteCollectorError):
    """Missing required field or uniqueness violation."""

    def __init__(self, message: str, field: Optional[str] = None) -> None:
        super().__init__(message, details={"field": field} if field else None)
        self.field = field


class ConstraintError(NoteCollectorError):
    """Operation would break a storage invariant (e.g. deleting the default theme)."""


class StorageIOError(NoteCollectorError):
    """A JSON data file could not be read or written."""

    def __init__(self, message: str, path: Optional[str] = None) -> None:
        super().__init__(message, details={"path": path} if path else None)
        self.path = path
