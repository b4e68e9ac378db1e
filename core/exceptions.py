"""
Custom exceptions for the migration pipeline with structured error context.

This module provides the exception hierarchy used throughout the
page-read → validate → aggregate → checkpoint → write loop. Each
exception carries context information for debugging and monitoring.

Exception Hierarchy:
    MigrationException (base)
    ├── ReadError
    │   └── TransientReadError
    ├── TransformationError
    │   └── ValidationError
    ├── WriteError
    │   └── TransientWriteError
    ├── CheckpointError
    │   └── CheckpointPersistError
    ├── ConfigurationError
    └── RetryableError / NonRetryableError (mixins)
"""

from typing import Optional, Dict, Any
from datetime import datetime


class MigrationException(Exception):
    """
    Base exception for all migration errors.

    Attributes:
        message: Human-readable error message
        context: Additional context information (stream, index, watermark, etc.)
        original_exception: The original exception that was caught (if any)
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        self.message = message
        self.context = context or {}
        self.original_exception = original_exception
        self.timestamp = datetime.utcnow()

        self.context["error_timestamp"] = self.timestamp.isoformat()

        super().__init__(message)
        if original_exception:
            self.__cause__ = original_exception

    def __str__(self) -> str:
        """Format error message with context."""
        base_msg = f"{self.__class__.__name__}: {self.message}"

        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            base_msg += f" | Context: {context_str}"

        if self.original_exception:
            base_msg += f" | Caused by: {type(self.original_exception).__name__}: {str(self.original_exception)}"

        return base_msg

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/storage."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "original_error": str(self.original_exception) if self.original_exception else None
        }


# ============================================================================
# Retry Strategy Mixins
# ============================================================================

class RetryableError(MigrationException):
    """
    Mixin for errors that should trigger retry logic.

    Use this for transient errors like:
    - Search backend timeouts
    - Rate limiting (HTTP 429)
    - Node unavailable (HTTP 5xx)
    - Temporary database connection issues
    """
    pass


class NonRetryableError(MigrationException):
    """
    Mixin for errors that should NOT trigger retry logic.

    Use this for permanent errors like:
    - Missing index (HTTP 404)
    - Malformed query or mapping conflicts (HTTP 400)
    - Invalid configuration
    """
    pass


# ============================================================================
# Read Errors
# ============================================================================

class ReadError(MigrationException):
    """
    Exception raised when a page cannot be read from the source index.

    Context should include:
        - source_index: The index that was queried
        - after_cursor: Cursor of the requested page
        - status_code: Backend status code (if applicable)
    """
    pass


class TransientReadError(RetryableError, ReadError):
    """Source call failed or timed out; retried at the page level."""
    pass


# ============================================================================
# Transformation Errors
# ============================================================================

class TransformationError(MigrationException):
    """Base exception for record transformation failures."""
    pass


class ValidationError(TransformationError):
    """
    Raised (or recorded) when a raw record fails validation.

    Context should include:
        - record_id: Source identifier of the record
        - field_name: First field that failed validation
        - reason: Validation message
    """
    pass


# ============================================================================
# Write Errors
# ============================================================================

class WriteError(MigrationException):
    """
    Exception raised when the destination rejects a batch.

    Context should include:
        - destination_index: Target index
        - batch_size: Number of items in the batch
        - status_code: Backend status code (if applicable)
    """
    pass


class TransientWriteError(RetryableError, WriteError):
    """Destination batch flush failed or timed out; retried with backoff."""
    pass


# ============================================================================
# Checkpoint Errors
# ============================================================================

class CheckpointError(MigrationException):
    """
    Exception raised when checkpoint management fails.

    Context should include:
        - stream: Logical stream name
        - watermark: The watermark that failed
        - operation: Operation that failed (read, write, finalize)
    """
    pass


class CheckpointPersistError(CheckpointError):
    """
    Checkpoint write retries exhausted; the run aborts.

    Context should include:
        - last_persisted_watermark: Last watermark known to be durable
    """
    pass


# ============================================================================
# Configuration Errors
# ============================================================================

class ConfigurationError(NonRetryableError):
    """
    Invalid threshold, unmapped category or other startup misconfiguration.

    Raised before a run starts, never mid-run.
    """
    pass
