"""
Error taxonomy and structured error logging for the auction lifecycle jobs.

Background jobs never surface errors to end users. Every failure is caught at
the smallest scope that still makes sense (a single listing, a single
notification recipient, or a whole run), turned into a ``StructuredError`` and
logged. Recovery is temporal: whatever did not make progress is picked up
again by the next scheduled tick.
"""

from __future__ import annotations

import time
import traceback
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

import httpx
from loguru import logger
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError


class LifecycleError(Exception):
    """Base class for errors raised by the lifecycle scheduler."""


class SchedulerConfigurationError(LifecycleError):
    """A job could not be registered with the trigger; fatal at startup."""


class InvalidTransitionError(LifecycleError):
    """A status change that is not an edge of the lifecycle graph was requested."""

    def __init__(self, from_status: str, to_status: str):
        super().__init__(f"Transition {from_status} -> {to_status} is not allowed")
        self.from_status = from_status
        self.to_status = to_status


class ErrorCategory(Enum):
    """
    Where a failure is contained.

    TRANSIENT: A collaborator (store, mail relay) was unreachable for one operation
    ITEM: One listing or one recipient failed; the batch continues
    RUN: The initial query of a run failed; the run is aborted
    CONFIGURATION: A job could not be registered; the process cannot start
    """

    TRANSIENT = "transient"
    ITEM = "item"
    RUN = "run"
    CONFIGURATION = "configuration"


class ErrorSeverity(Enum):
    """
    Severity levels for errors.

    LOW: Expected outcomes such as a lost conditional update
    MEDIUM: One item did not make progress
    HIGH: A whole run did not make progress
    CRITICAL: The scheduler cannot function
    """

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass
class ErrorContext:
    """
    Context information for debugging and error analysis.
    """

    operation: str
    job: Optional[str] = None
    listing_id: Optional[str] = None
    recipient_id: Optional[str] = None
    timestamp: float = field(default_factory=time.time)
    additional_data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation": self.operation,
            "job": self.job,
            "listing_id": self.listing_id,
            "recipient_id": self.recipient_id,
            "timestamp": self.timestamp,
            "additional_data": self.additional_data,
        }


@dataclass
class StructuredError:
    """
    Structured error representation with categorization and context.
    """

    message: str
    category: ErrorCategory
    severity: ErrorSeverity
    context: ErrorContext
    original_exception: Optional[BaseException] = None
    stack_trace: Optional[List[str]] = None

    def __post_init__(self):
        if self.original_exception and not self.stack_trace:
            self.stack_trace = traceback.format_exception(
                type(self.original_exception),
                self.original_exception,
                self.original_exception.__traceback__,
            )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "category": self.category.value,
            "severity": self.severity.value,
            "context": self.context.to_dict(),
            "exception_type": type(self.original_exception).__name__
            if self.original_exception
            else None,
        }

    def is_retried_next_tick(self) -> bool:
        """Whether the next scheduled run naturally retries the failed work."""
        return self.category is not ErrorCategory.CONFIGURATION


_TRANSIENT_EXCEPTIONS = (
    OperationalError,
    DBAPIError,
    PoolTimeoutError,
    httpx.HTTPError,
    ConnectionError,
    TimeoutError,
)


class ErrorClassifier:
    """
    Utility class for classifying exceptions into structured errors.
    """

    @staticmethod
    def classify_exception(
        exception: BaseException,
        context: ErrorContext,
        scope: ErrorCategory = ErrorCategory.ITEM,
    ) -> StructuredError:
        """
        Classify an exception raised while working at ``scope``.

        Configuration errors keep their category wherever they surface.
        Collaborator outages are transient. Anything else is attributed
        to the scope it was caught in.
        """
        error_message = str(exception) or type(exception).__name__

        if isinstance(exception, SchedulerConfigurationError):
            return StructuredError(
                message=f"Configuration error during {context.operation}: {error_message}",
                category=ErrorCategory.CONFIGURATION,
                severity=ErrorSeverity.CRITICAL,
                context=context,
                original_exception=exception,
            )

        if isinstance(exception, _TRANSIENT_EXCEPTIONS):
            return StructuredError(
                message=f"Collaborator unavailable during {context.operation}: {error_message}",
                category=ErrorCategory.TRANSIENT,
                severity=ErrorSeverity.HIGH if scope is ErrorCategory.RUN else ErrorSeverity.MEDIUM,
                context=context,
                original_exception=exception,
            )

        severity = {
            ErrorCategory.RUN: ErrorSeverity.HIGH,
            ErrorCategory.CONFIGURATION: ErrorSeverity.CRITICAL,
        }.get(scope, ErrorSeverity.MEDIUM)
        return StructuredError(
            message=f"Error during {context.operation}: {error_message}",
            category=scope,
            severity=severity,
            context=context,
            original_exception=exception,
        )


def log_structured_error(error: StructuredError) -> None:
    """Log a structured error at a level matching its severity."""

    bound = logger.bind(
        category=error.category.value,
        severity=error.severity.value,
        **{k: v for k, v in error.context.to_dict().items() if v is not None and k != "timestamp"},
    )
    if error.severity is ErrorSeverity.CRITICAL:
        bound.opt(exception=error.original_exception).critical(error.message)
    elif error.severity is ErrorSeverity.HIGH:
        bound.opt(exception=error.original_exception).error(error.message)
    elif error.severity is ErrorSeverity.MEDIUM:
        bound.opt(exception=error.original_exception).warning(error.message)
    else:
        bound.info(error.message)


def capture_exception(
    exception: BaseException,
    *,
    operation: str,
    scope: ErrorCategory = ErrorCategory.ITEM,
    job: Optional[str] = None,
    listing_id: Optional[str] = None,
    recipient_id: Optional[str] = None,
    **additional_data: Any,
) -> StructuredError:
    """Classify and log an exception, returning the structured record."""

    context = ErrorContext(
        operation=operation,
        job=job,
        listing_id=listing_id,
        recipient_id=recipient_id,
        additional_data=additional_data,
    )
    error = ErrorClassifier.classify_exception(exception, context, scope)
    log_structured_error(error)
    return error
