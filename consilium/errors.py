"""Exception types shared across Consilium."""
from __future__ import annotations

from typing import Any, Optional


class ConsiliumError(Exception):
    """Base class for all Consilium errors."""
    pass


class ValidationError(ConsiliumError):
    """Raised when a consultation is started without the required case or doctors."""
    pass


class ProviderError(ConsiliumError):
    """Raised when a model or embedding provider call fails."""

    def __init__(self, message: str, status: Optional[int] = None, body: Any = None) -> None:
        super().__init__(message)
        self.status = status
        self.body = body


class CallTimeoutError(ConsiliumError):
    """Raised when an external call does not resolve within its timeout."""
    pass


class NotFoundError(ConsiliumError):
    """Raised when a knowledge document does not exist."""
    pass


class VoteParseError(ConsiliumError):
    """Raised internally when a vote fragment cannot be decoded."""
    pass


class KnowledgeImportError(ConsiliumError):
    """Raised when a knowledge import payload is malformed."""
    pass
