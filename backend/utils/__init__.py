"""
Utils Package

Provides utility modules for:
- retry: write-conflict retry policy for atomic units
- validation_errors: structured 422 responses
"""

from .retry import (
    RetryPolicy,
    RetryableConflict,
    WriteConflictError,
    is_write_conflict,
    retry_on_conflict,
)

__all__ = [
    'RetryPolicy',
    'RetryableConflict',
    'WriteConflictError',
    'is_write_conflict',
    'retry_on_conflict',
]
