"""Reliability module: error taxonomy and cooperative cancellation."""

from .errors import (
    ErrorSeverity, ErrorCategory, RecoveryStrategy, ErrorContext,
    EnhancedError, ValidationError, BlockedHostError,
    NoContentError, TargetBlockedError, ArchiveError, JobCancelledError,
    ErrorHandler, classify_error, user_message
)
from .cancellation import CancellationToken

__all__ = [
    'ErrorSeverity', 'ErrorCategory', 'RecoveryStrategy', 'ErrorContext',
    'EnhancedError', 'ValidationError', 'BlockedHostError',
    'NoContentError', 'TargetBlockedError', 'ArchiveError', 'JobCancelledError',
    'ErrorHandler', 'classify_error', 'user_message',
    'CancellationToken',
]
