"""
Software Center Exception Hierarchy

Provides clear, actionable error messages with structured information
for logging, user feedback, and programmatic error handling.
"""

from typing import Optional, Dict, Any, List


class CenterError(Exception):
    """
    Base exception for all software center errors.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error code
        details: Additional context as key-value pairs
        cause: Original exception that caused this error
        recoverable: Whether the user can fix the problem and try again
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
        recoverable: bool = True,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        self.cause = cause
        self.recoverable = recoverable

    def __str__(self):
        s = f"[{self.code}] {self.message}"
        if self.details:
            s += f" (details: {self.details})"
        if self.cause:
            s += f" caused by: {self.cause}"
        return s

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
            "recoverable": self.recoverable,
        }


# =============================================================================
# Catalog errors
# =============================================================================

class CatalogError(CenterError):
    """Base for catalog-related errors."""
    pass


class CatalogUnavailableError(CatalogError):
    """Metadata or package source could not be read and no catalog exists yet."""
    def __init__(self, source: str, reason: str, cause: Optional[Exception] = None):
        super().__init__(
            f"Catalog source unavailable: {source}: {reason}",
            code="CATALOG_UNAVAILABLE",
            details={"source": source, "reason": reason},
            cause=cause,
            recoverable=False,
        )


class CatalogBusyError(CatalogError):
    """A catalog rebuild is already running."""
    def __init__(self):
        super().__init__(
            "A catalog rebuild is already in progress",
            code="CATALOG_BUSY",
        )


class InvalidFilterError(CatalogError):
    """Search was called with filters it does not understand."""
    def __init__(self, keys: List[str], allowed: List[str]):
        super().__init__(
            f"Unknown search filter(s): {', '.join(keys)}",
            code="INVALID_FILTER",
            details={"unknown": keys, "allowed": allowed},
        )


# =============================================================================
# Transaction errors
# =============================================================================

class TransactionError(CenterError):
    """Base for transaction-related errors."""
    pass


class InvalidTargetError(TransactionError):
    """Target package or generation does not exist or cannot take the operation."""
    def __init__(self, target: str, reason: str):
        super().__init__(
            f"Invalid target '{target}': {reason}",
            code="INVALID_TARGET",
            details={"target": target, "reason": reason},
        )


class ConflictingTransactionError(TransactionError):
    """An unfinished transaction already exists for the same target."""
    def __init__(self, target: str, existing_id: int):
        super().__init__(
            f"Transaction {existing_id} for '{target}' is still pending",
            code="CONFLICTING_TRANSACTION",
            details={"target": target, "existing_id": existing_id},
        )


class TransactionNotFoundError(TransactionError):
    """No transaction with the given id is known."""
    def __init__(self, transaction_id: int):
        super().__init__(
            f"Transaction {transaction_id} not found",
            code="TRANSACTION_NOT_FOUND",
            details={"transaction_id": transaction_id},
        )


class NotCancellableError(TransactionError):
    """Only queued transactions can be cancelled."""
    def __init__(self, transaction_id: int, state: str):
        super().__init__(
            f"Transaction {transaction_id} is {state} and cannot be cancelled",
            code="NOT_CANCELLABLE",
            details={"transaction_id": transaction_id, "state": state},
        )


class BackendFailureError(TransactionError):
    """The privileged mutation backend reported a failure."""
    def __init__(
        self,
        failure_code: str,
        message: str,
        raw_output: str = "",
        cause: Optional[Exception] = None,
    ):
        super().__init__(
            message,
            code="BACKEND_FAILURE",
            details={"failure_code": failure_code},
            cause=cause,
        )
        self.failure_code = failure_code
        self.raw_output = raw_output


# =============================================================================
# Configuration errors
# =============================================================================

class ConfigError(CenterError):
    """Base for configuration errors."""
    pass


class InvalidConfigError(ConfigError):
    """Invalid configuration."""
    def __init__(self, field: str, value: Any, reason: str):
        super().__init__(
            f"Invalid configuration: {field}={value}: {reason}",
            code="INVALID_CONFIG",
            details={"field": field, "value": str(value), "reason": reason},
        )
