"""
Error Taxonomy for the P&L service

Provides systematic classification of failure modes with:
- Categories that separate malformed input from transient upstream failures
- HTTP-equivalent status per category
- Recoverability indicators and suggested recovery actions
- Structured error context for debugging
"""

import asyncio
from enum import Enum, auto
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List
import logging
import traceback

from google.api_core import exceptions as google_exceptions
from sqlalchemy import exc as sa_exc

logger = logging.getLogger(__name__)


class ErrorCategory(Enum):
    """Systematic classification of failure modes."""
    # Request validation
    BAD_REQUEST = auto()
    UNSUPPORTED_COMBINATION = auto()

    # Backing stores
    UPSTREAM_UNAVAILABLE = auto()
    UPSTREAM_TIMEOUT = auto()

    # System Errors
    CONFIGURATION_ERROR = auto()
    INTERNAL_ERROR = auto()


HTTP_STATUS: Dict[ErrorCategory, int] = {
    ErrorCategory.BAD_REQUEST: 400,
    ErrorCategory.UNSUPPORTED_COMBINATION: 400,
    ErrorCategory.UPSTREAM_UNAVAILABLE: 502,
    ErrorCategory.UPSTREAM_TIMEOUT: 504,
    ErrorCategory.CONFIGURATION_ERROR: 500,
    ErrorCategory.INTERNAL_ERROR: 500,
}


class ErrorSeverity(Enum):
    """Severity levels for errors."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass
class RecoveryAction:
    """Suggested action to recover from an error."""
    action_type: str
    description: str
    parameters: Dict[str, Any] = field(default_factory=dict)

    @staticmethod
    def retry(delay_seconds: float = 1.0, max_attempts: int = 3) -> "RecoveryAction":
        return RecoveryAction(
            action_type="retry",
            description=f"Retry after {delay_seconds}s (max {max_attempts} attempts)",
            parameters={"delay": delay_seconds, "max_attempts": max_attempts}
        )

    @staticmethod
    def clarify(message: str) -> "RecoveryAction":
        return RecoveryAction(
            action_type="clarify",
            description="Correct the request parameters",
            parameters={"message": message}
        )

    @staticmethod
    def abort(reason: str) -> "RecoveryAction":
        return RecoveryAction(
            action_type="abort",
            description=f"Abort operation: {reason}",
            parameters={"reason": reason}
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.action_type,
            "description": self.description,
            "parameters": self.parameters,
        }


@dataclass
class ClassifiedError:
    """A classified error with full context."""
    category: ErrorCategory
    severity: ErrorSeverity
    message: str
    recoverable: bool
    recovery_actions: List[RecoveryAction]

    original_exception: Optional[Exception] = None
    operation: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)
    stack_trace: Optional[str] = None
    user_message: Optional[str] = None

    def __post_init__(self):
        if self.original_exception and not self.stack_trace:
            self.stack_trace = ''.join(traceback.format_exception(
                type(self.original_exception),
                self.original_exception,
                self.original_exception.__traceback__
            ))

        if not self.user_message:
            self.user_message = self._generate_user_message()

    @property
    def http_status(self) -> int:
        return HTTP_STATUS[self.category]

    @property
    def is_client_error(self) -> bool:
        return 400 <= self.http_status < 500

    def _generate_user_message(self) -> str:
        """Generate a user-facing error message."""
        messages = {
            ErrorCategory.BAD_REQUEST: f"Parâmetros inválidos: {self.message}",
            ErrorCategory.UNSUPPORTED_COMBINATION: f"Combinação não suportada: {self.message}",
            ErrorCategory.UPSTREAM_UNAVAILABLE: "Fonte de dados indisponível. Tente novamente.",
            ErrorCategory.UPSTREAM_TIMEOUT: "A consulta demorou demais. Tente novamente.",
            ErrorCategory.CONFIGURATION_ERROR: "Serviço mal configurado.",
        }
        return messages.get(self.category, "Erro interno.")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "category": self.category.name,
            "severity": self.severity.value,
            "message": self.message,
            "user_message": self.user_message,
            "recoverable": self.recoverable,
            "recovery_actions": [a.to_dict() for a in self.recovery_actions],
            "http_status": self.http_status,
            "operation": self.operation,
            "context": self.context,
        }


class PnLError(Exception):
    """Base exception for P&L errors with classification."""

    default_category = ErrorCategory.INTERNAL_ERROR
    default_severity = ErrorSeverity.HIGH

    def __init__(
        self,
        message: str,
        category: ErrorCategory = None,
        severity: ErrorSeverity = None,
        recoverable: bool = False,
        recovery_actions: List[RecoveryAction] = None,
        context: Dict[str, Any] = None,
    ):
        super().__init__(message)
        self.category = category or self.default_category
        self.severity = severity or self.default_severity
        self.recoverable = recoverable
        self.recovery_actions = recovery_actions or []
        self.context = context or {}

    def classify(self) -> ClassifiedError:
        return ClassifiedError(
            category=self.category,
            severity=self.severity,
            message=str(self),
            recoverable=self.recoverable,
            recovery_actions=self.recovery_actions,
            original_exception=self,
            context=dict(self.context),
        )


class BadRequestError(PnLError):
    """Missing or malformed parameter, rejected before any I/O."""

    default_category = ErrorCategory.BAD_REQUEST
    default_severity = ErrorSeverity.LOW

    def __init__(self, message: str, context: Dict[str, Any] = None):
        super().__init__(
            message,
            recoverable=True,
            recovery_actions=[RecoveryAction.clarify(message)],
            context=context,
        )


class UnsupportedCombinationError(PnLError):
    """A breakdown or detail requested for a kind with no defined query."""

    default_category = ErrorCategory.UNSUPPORTED_COMBINATION
    default_severity = ErrorSeverity.LOW

    def __init__(self, message: str, context: Dict[str, Any] = None):
        super().__init__(
            message,
            recoverable=True,
            recovery_actions=[RecoveryAction.clarify(message)],
            context=context,
        )


class DataRetrievalError(PnLError):
    """A backing-store call failed."""

    default_category = ErrorCategory.UPSTREAM_UNAVAILABLE
    default_severity = ErrorSeverity.HIGH

    def __init__(self, message: str, source: str = "", timeout: bool = False,
                 context: Dict[str, Any] = None):
        context = dict(context or {})
        if source:
            context["source"] = source
        super().__init__(
            message,
            category=ErrorCategory.UPSTREAM_TIMEOUT if timeout else ErrorCategory.UPSTREAM_UNAVAILABLE,
            recoverable=True,
            recovery_actions=[RecoveryAction.retry(delay_seconds=5.0)],
            context=context,
        )


class ConfigurationError(PnLError):
    """Missing or invalid configuration (connection settings, corrections file)."""

    default_category = ErrorCategory.CONFIGURATION_ERROR
    default_severity = ErrorSeverity.CRITICAL

    def __init__(self, message: str, context: Dict[str, Any] = None):
        super().__init__(
            message,
            recoverable=False,
            recovery_actions=[RecoveryAction.abort("fix the service configuration")],
            context=context,
        )


def _upstream(exception: Exception, category: ErrorCategory, operation: str,
              context: Dict[str, Any]) -> ClassifiedError:
    return ClassifiedError(
        category=category,
        severity=ErrorSeverity.MEDIUM if category == ErrorCategory.UPSTREAM_TIMEOUT else ErrorSeverity.HIGH,
        message=str(exception),
        recoverable=True,
        recovery_actions=[RecoveryAction.retry(delay_seconds=5.0)],
        original_exception=exception,
        operation=operation,
        context=context,
    )


def classify_error(
    exception: Exception,
    operation: str = None,
    context: Dict[str, Any] = None,
) -> ClassifiedError:
    """Classify an exception into a structured error."""
    context = context or {}

    if isinstance(exception, PnLError):
        classified = exception.classify()
        classified.operation = operation
        classified.context.update(context)
        return classified

    if isinstance(exception, (asyncio.TimeoutError, TimeoutError)):
        return _upstream(exception, ErrorCategory.UPSTREAM_TIMEOUT, operation, context)

    if isinstance(exception, (google_exceptions.DeadlineExceeded, google_exceptions.GatewayTimeout)):
        return _upstream(exception, ErrorCategory.UPSTREAM_TIMEOUT, operation, context)

    if isinstance(exception, (google_exceptions.GoogleAPIError, sa_exc.OperationalError, sa_exc.DBAPIError)):
        return _upstream(exception, ErrorCategory.UPSTREAM_UNAVAILABLE, operation, context)

    error_str = str(exception).lower()

    # Timeout
    if "timeout" in error_str or "timed out" in error_str:
        return _upstream(exception, ErrorCategory.UPSTREAM_TIMEOUT, operation, context)

    # Default
    return ClassifiedError(
        category=ErrorCategory.INTERNAL_ERROR,
        severity=ErrorSeverity.HIGH,
        message=str(exception),
        recoverable=False,
        recovery_actions=[],
        original_exception=exception,
        operation=operation,
        context=context,
    )


def log_classified(classified: ClassifiedError) -> None:
    """Log at warning for client errors, error with traceback for everything else."""
    if classified.is_client_error:
        logger.warning(f"{classified.category.name} in {classified.operation}: {classified.message}")
    else:
        logger.error(
            f"{classified.category.name} in {classified.operation}: {classified.message}\n"
            f"{classified.stack_trace or ''}"
        )
