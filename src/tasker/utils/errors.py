"""
Error handling framework for tasker.

This module provides:
- Hierarchical exception classes
- Error context preservation
- Structured error payloads for logging
"""

from typing import Optional, Dict, Any, List
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from contextlib import contextmanager
import traceback

from .logging import get_logger


logger = get_logger("tasker.errors")


class ErrorSeverity(Enum):
    """Error severity levels."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Error categories for classification."""
    SYSTEM = "system"
    DATABASE = "database"
    VALIDATION = "validation"
    CONFIGURATION = "configuration"
    PROCESS = "process"
    INTERNAL = "internal"
    UNKNOWN = "unknown"


@dataclass
class ErrorContext:
    """Context information for an error."""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    component: Optional[str] = None
    operation: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    stack_trace: Optional[str] = None


class TaskerError(Exception):
    """Base exception for all tasker errors."""

    code: str = "TASKER_ERROR"
    default_message: str = "An error occurred in tasker"
    severity: ErrorSeverity = ErrorSeverity.ERROR
    category: ErrorCategory = ErrorCategory.UNKNOWN
    is_retryable: bool = False

    def __init__(
        self,
        message: Optional[str] = None,
        context: Optional[ErrorContext] = None,
        cause: Optional[Exception] = None,
        **kwargs
    ):
        """Initialize tasker error."""
        self.message = message or self.default_message
        self.context = context or ErrorContext()
        self.cause = cause
        self.kwargs = kwargs

        if not self.context.stack_trace and cause is not None:
            self.context.stack_trace = "".join(
                traceback.format_exception(type(cause), cause, cause.__traceback__)
            )

        super().__init__(self.message)

    def get_suggestions(self) -> List[str]:
        """Get error resolution suggestions."""
        return []

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "severity": self.severity.value,
                "category": self.category.value,
                "is_retryable": self.is_retryable,
                "suggestions": self.get_suggestions(),
                "cause": str(self.cause) if self.cause else None,
                "context": {
                    "timestamp": self.context.timestamp.isoformat(),
                    "component": self.context.component,
                    "operation": self.context.operation,
                    "metadata": self.context.metadata
                }
            }
        }


class ConfigurationError(TaskerError):
    """Configuration errors."""
    code = "CONFIG_ERROR"
    default_message = "Configuration error"
    category = ErrorCategory.CONFIGURATION

    def get_suggestions(self) -> List[str]:
        return [
            "Check your configuration file syntax",
            "Check TASKER_* environment variables for typos"
        ]


# Database Errors

class DatabaseError(TaskerError):
    """Database-related errors."""
    code = "DATABASE_ERROR"
    default_message = "Database error occurred"
    category = ErrorCategory.DATABASE


class DatabaseConnectionError(DatabaseError):
    """Database connection errors."""
    code = "DB_CONNECTION_ERROR"
    default_message = "Failed to connect to database"
    is_retryable = True


class DatabaseIntegrityError(DatabaseError):
    """Database integrity errors."""
    code = "DB_INTEGRITY_ERROR"
    default_message = "Database integrity constraint violated"
    severity = ErrorSeverity.CRITICAL


# Validation Errors

class ValidationError(TaskerError):
    """Input validation errors."""
    code = "VALIDATION_ERROR"
    default_message = "Validation error"
    category = ErrorCategory.VALIDATION
    severity = ErrorSeverity.WARNING

    def __init__(self, field: str, value: Any, constraint: str, **kwargs):
        self.field = field
        self.value = value
        self.constraint = constraint
        message = f"Validation failed for field '{field}': {constraint}"
        super().__init__(message, **kwargs)

    def get_suggestions(self) -> List[str]:
        return [
            f"Check the value of field '{self.field}'",
            f"Ensure it meets the constraint: {self.constraint}"
        ]


class TaskNotFoundError(TaskerError):
    """A stage, task or run could not be found."""
    code = "TASK_NOT_FOUND"
    default_message = "Task not found"
    category = ErrorCategory.VALIDATION
    severity = ErrorSeverity.WARNING


# Reporter Errors

class ReporterError(TaskerError):
    """Reporter daemon errors."""
    code = "REPORTER_ERROR"
    default_message = "Reporter error"
    category = ErrorCategory.PROCESS


class ReporterStartupError(ReporterError):
    """The reporter could not claim its host or reach the database."""
    code = "REPORTER_STARTUP_ERROR"
    default_message = "Reporter failed to start"
    severity = ErrorSeverity.CRITICAL


@contextmanager
def error_context(component: str, operation: str, **metadata):
    """
    Attach component/operation context to errors raised in the block.

    Non-tasker exceptions are wrapped in ``TaskerError``.
    """
    context = ErrorContext(
        component=component,
        operation=operation,
        metadata=metadata
    )

    try:
        yield context
    except TaskerError as e:
        e.context.component = e.context.component or component
        e.context.operation = e.context.operation or operation
        e.context.metadata.update(metadata)
        logger.error("tasker_error_in_context", error=e.to_dict())
        raise
    except Exception as e:
        wrapped = TaskerError(message=str(e), context=context, cause=e)
        logger.error("unexpected_error_in_context", error=wrapped.to_dict())
        raise wrapped from e


__all__ = [
    'TaskerError',
    'ErrorContext',
    'ErrorSeverity',
    'ErrorCategory',
    'ConfigurationError',
    'DatabaseError',
    'DatabaseConnectionError',
    'DatabaseIntegrityError',
    'ValidationError',
    'TaskNotFoundError',
    'ReporterError',
    'ReporterStartupError',
    'error_context',
]
