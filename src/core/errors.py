"""
Error taxonomy for the personalization engine.

- ValidationError: bad input, rejected synchronously and never retried
- TransientStoreError: store timeout or write conflict, retried with backoff
- ConfigurationError: bad weighting constants, raised at startup only
"""

from typing import Any, Dict, Optional


class PersonalizationError(Exception):
    """Base class for all personalization errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(PersonalizationError, ValueError):
    """Malformed event, unknown attribute value or unknown user."""


class TransientStoreError(PersonalizationError):
    """A store call failed in a way that may succeed on retry."""


class WriteConflictError(TransientStoreError):
    """Optimistic concurrency check failed (document changed underneath)."""


class StoreTimeoutError(TransientStoreError):
    """A store call exceeded its time bound."""


class StoreUnavailableError(TransientStoreError):
    """The backing store could not be reached."""


class ConfigurationError(PersonalizationError):
    """Weighting constants are missing or inconsistent."""
