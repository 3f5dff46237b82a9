"""Error types for KeySeries operations."""

from __future__ import annotations


class KeySeriesError(Exception):
    """Base exception for KeySeries operations."""


class ValidationError(KeySeriesError):
    """Raised when a mutation is rejected by a precondition."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


class NotFoundError(KeySeriesError):
    """Raised when a custom type or annotation id is unknown."""

    def __init__(self, kind: str, key: str) -> None:
        self.kind = kind
        self.key = key
        super().__init__(f"{kind} not found: {key!r}")


class CollaboratorError(KeySeriesError):
    """Raised when persistence, image decoding or another collaborator fails."""

    def __init__(self, collaborator: str, message: str, retryable: bool = False) -> None:
        self.collaborator = collaborator
        self.retryable = retryable
        super().__init__(f"[{collaborator}] {message}")
