"""
Quarry ORM Exceptions
=====================

Error taxonomy for the ORM.

Identifier and connection errors always propagate to the caller.
RelationNotFound and MalformedStoredJSON are soft failures: they are
raised internally, logged, and the surrounding read carries on.
"""

from __future__ import annotations

from typing import Any, Optional


class QuarryError(Exception):
    """Base ORM error."""
    pass


class InvalidIdentifier(QuarryError, ValueError):
    """An identifier failed the safety check before reaching SQL."""

    def __init__(self, identifier: Any, kind: str = "column") -> None:
        super().__init__(f"Invalid {kind} name: {identifier!r}")
        self.identifier = identifier
        self.kind = kind


class InvalidOperator(QuarryError, ValueError):
    """A comparison operator is not in the allow-list."""

    def __init__(self, operator: Any) -> None:
        super().__init__(f"Invalid operator: {operator!r}")
        self.operator = operator


class NoConnection(QuarryError, RuntimeError):
    """No database bound or connected."""

    def __init__(self, message: str = "No database connection") -> None:
        super().__init__(message)


class UnsupportedDriver(QuarryError, ValueError):
    """Unknown database driver or URL scheme."""
    pass


class RelationNotFound(QuarryError, LookupError):
    """An eager-load name does not resolve to a relation."""

    def __init__(self, model: str, relation: str, reason: Optional[str] = None) -> None:
        message = f"Relation '{relation}' not found on {model}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.model = model
        self.relation = relation


class MalformedStoredJSON(QuarryError, ValueError):
    """A JSON-cast column holds text that does not parse."""

    def __init__(self, value: Any, error: Exception) -> None:
        super().__init__(f"Malformed JSON value: {error}")
        self.value = value


class ModelNotFound(QuarryError, LookupError):
    """No model matched a *_or_fail lookup."""
    pass
