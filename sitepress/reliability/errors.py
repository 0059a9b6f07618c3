"""Error taxonomy for export jobs.

- Input validation failures stop a job before any network access
- Per-page failures are recovered locally and only counted
- Whole-job failures surface as the job's terminal message
- Cancellation is its own terminal path
"""

from __future__ import annotations

import logging
import traceback
from enum import Enum
from typing import Any, Dict, Optional
from datetime import datetime

from pydantic import BaseModel, Field


class ErrorSeverity(str, Enum):
    """Error severity levels for prioritized handling."""
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"


class ErrorCategory(str, Enum):
    """Error categories, one per user-visible failure kind."""
    VALIDATION = "validation"     # missing/invalid URL, disallowed host
    NO_CONTENT = "no_content"     # nothing usable after per-page recovery
    BLOCKED = "blocked"           # target served a bot challenge
    RESOURCE = "resource"         # archive/document could not be written
    CANCELLED = "cancelled"       # user stop
    UNKNOWN = "unknown"


class RecoveryStrategy(str, Enum):
    """What the pipeline does after the error."""
    SKIP = "skip"
    FAIL = "fail"


class ErrorContext(BaseModel):
    """Detailed error context for debugging."""
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    job_id: Optional[str] = None
    kind: Optional[str] = None
    url: Optional[str] = None
    parameters: Dict[str, Any] = {}
    traceback: Optional[str] = None


class EnhancedError(Exception):
    """Base enhanced error with context and recovery information."""

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        recovery_strategy: RecoveryStrategy = RecoveryStrategy.FAIL,
        context: Optional[ErrorContext] = None,
        cause: Optional[Exception] = None
    ):
        super().__init__(message)
        self.message = message
        self.category = category
        self.severity = severity
        self.recovery_strategy = recovery_strategy
        self.context = context or ErrorContext()
        self.cause = cause

        if not self.context.traceback and cause:
            self.context.traceback = ''.join(
                traceback.format_exception(type(cause), cause, cause.__traceback__)
            )

    def user_message(self) -> str:
        """Text shown on the progress stream and the download endpoint."""
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for logging/storage."""
        return {
            "message": self.message,
            "category": self.category.value,
            "severity": self.severity.value,
            "recovery_strategy": self.recovery_strategy.value,
            "context": self.context.model_dump(mode="json"),
            "cause": str(self.cause) if self.cause else None
        }


class ValidationError(EnhancedError):
    """Bad job input: no URL, unknown mode, empty list."""
    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.VALIDATION,
            severity=ErrorSeverity.LOW,
            recovery_strategy=RecoveryStrategy.FAIL,
            **kwargs
        )


class BlockedHostError(ValidationError):
    """URL rejected by the admission policy."""
    def __init__(self, url: str, reason: str, **kwargs):
        super().__init__(f"Blocked host: {reason}", **kwargs)
        self.url = url
        self.reason = reason


class NoContentError(EnhancedError):
    """Nothing usable was extracted from any page."""
    def __init__(self, detail: str, **kwargs):
        super().__init__(
            f"No content found: {detail}",
            category=ErrorCategory.NO_CONTENT,
            severity=ErrorSeverity.MEDIUM,
            **kwargs
        )


class TargetBlockedError(EnhancedError):
    """Every page answered with a bot-verification interstitial."""
    def __init__(self, detail: str = "", **kwargs):
        message = "The target site blocked automated access (verification page never cleared)"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(
            message,
            category=ErrorCategory.BLOCKED,
            severity=ErrorSeverity.MEDIUM,
            **kwargs
        )


class ArchiveError(EnhancedError):
    """Archive or document could not be finalized."""
    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.RESOURCE,
            severity=ErrorSeverity.HIGH,
            **kwargs
        )


class JobCancelledError(EnhancedError):
    """Raised at the next suspension point after a stop request."""
    def __init__(self, message: str = "Job cancelled.", **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.CANCELLED,
            severity=ErrorSeverity.INFO,
            **kwargs
        )


def classify_error(error: BaseException, context: Optional[ErrorContext] = None) -> EnhancedError:
    """Wrap any exception into the taxonomy; unknown ones become internal errors."""
    if isinstance(error, EnhancedError):
        return error
    return EnhancedError(
        f"Internal error: {error}" if str(error) else f"Internal error: {type(error).__name__}",
        category=ErrorCategory.UNKNOWN,
        severity=ErrorSeverity.HIGH,
        context=context,
        cause=error if isinstance(error, Exception) else None,
    )


def user_message(error: BaseException) -> str:
    """Human-readable terminal message for any exception."""
    return classify_error(error).user_message()


class ErrorHandler:
    """Logs classified errors and keeps per-category counts for /stats."""

    def __init__(self, logger: logging.Logger):
        self.logger = logger
        self.error_counts: Dict[str, int] = {}

    def handle_error(
        self,
        error: BaseException,
        context: Optional[ErrorContext] = None
    ) -> EnhancedError:
        """Classify, log and count an error. Returns the classified error."""
        enhanced = classify_error(error, context)
        if context is not None and enhanced.context is not context and not enhanced.context.job_id:
            enhanced.context = context
        self._log_error(enhanced)
        key = enhanced.category.value
        self.error_counts[key] = self.error_counts.get(key, 0) + 1
        return enhanced

    def _log_error(self, error: EnhancedError) -> None:
        """Log error with appropriate level."""
        job = error.context.job_id or "-"
        log_message = f"[{error.category.value}] job={job} {error.message}"

        if error.severity == ErrorSeverity.CRITICAL:
            self.logger.critical(log_message)
        elif error.severity == ErrorSeverity.HIGH:
            self.logger.error(log_message)
            if error.context.traceback:
                self.logger.debug(error.context.traceback)
        elif error.severity == ErrorSeverity.MEDIUM:
            self.logger.warning(log_message)
        else:
            self.logger.info(log_message)

    def get_error_stats(self) -> Dict[str, int]:
        return dict(self.error_counts)
