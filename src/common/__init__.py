"""
Software Center Common Utilities

Shared error types, logging setup, and synchronization helpers.
"""

from .exceptions import (
    CenterError, CatalogError, CatalogUnavailableError, CatalogBusyError,
    InvalidFilterError, TransactionError, InvalidTargetError,
    ConflictingTransactionError, TransactionNotFoundError, NotCancellableError,
    BackendFailureError, ConfigError, InvalidConfigError,
)
from .decorators import handle_errors, timed
from .logging_config import setup_logging, LogContext
from .concurrency import SnapshotRef, AtomicCounter

__all__ = [
    # Exceptions
    "CenterError", "CatalogError", "CatalogUnavailableError", "CatalogBusyError",
    "InvalidFilterError", "TransactionError", "InvalidTargetError",
    "ConflictingTransactionError", "TransactionNotFoundError", "NotCancellableError",
    "BackendFailureError", "ConfigError", "InvalidConfigError",
    # Decorators
    "handle_errors", "timed",
    # Logging
    "setup_logging", "LogContext",
    # Concurrency
    "SnapshotRef", "AtomicCounter",
]
