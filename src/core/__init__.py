"""
Core module for cross-cutting concerns.

This module provides:
- Structured logging configuration
- The personalization error taxonomy
"""

from core.errors import (
    ConfigurationError,
    PersonalizationError,
    StoreTimeoutError,
    StoreUnavailableError,
    TransientStoreError,
    ValidationError,
    WriteConflictError,
)
from core.logging import configure_logging, get_logger, log_context

__all__ = [
    "configure_logging",
    "get_logger",
    "log_context",
    "PersonalizationError",
    "ValidationError",
    "TransientStoreError",
    "WriteConflictError",
    "StoreTimeoutError",
    "StoreUnavailableError",
    "ConfigurationError",
]
