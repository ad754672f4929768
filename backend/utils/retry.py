"""
Write-conflict retry

Re-runs a whole atomic unit when the database reports a concurrent-write
conflict:
- StaleDataError (version counter moved under us)
- serialization failures and deadlocks (PostgreSQL 40001 / 40P01)
- "database is locked" (SQLite)
- RetryableConflict raised by the ledger for unique-key races

Anything else propagates untouched. When attempts run out the last
conflict is surfaced as WriteConflictError.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, TypeVar

from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm.exc import StaleDataError

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRY_DELAYS = [0.05, 0.2, 0.5]  # seconds - short, the unit is small
MAX_ATTEMPTS = 3

_CONFLICT_SQLSTATES = {"40001", "40P01"}
_CONFLICT_MESSAGES = (
    "database is locked",
    "database table is locked",
    "could not serialize access",
    "deadlock detected",
    "serialization failure",
)


class RetryableConflict(Exception):
    """Raised inside a unit to ask for a clean re-run"""


class WriteConflictError(Exception):
    """Conflict persisted after every retry"""

    def __init__(self, message: str, attempts: int = 0):
        super().__init__(message)
        self.attempts = attempts


@dataclass
class RetryPolicy:
    max_attempts: int = MAX_ATTEMPTS
    delays: List[float] = field(default_factory=lambda: list(RETRY_DELAYS))

    def delay_for(self, attempt: int) -> float:
        if not self.delays:
            return 0.0
        return self.delays[min(attempt, len(self.delays) - 1)]

    @classmethod
    def from_settings(cls, settings=None) -> "RetryPolicy":
        if settings is None:
            from config import get_settings
            settings = get_settings()
        return cls(max_attempts=settings.RETRY_MAX_ATTEMPTS, delays=list(settings.RETRY_DELAYS))


def is_write_conflict(exc: BaseException) -> bool:
    """True when the error means "someone else wrote first, try again"."""
    if isinstance(exc, (StaleDataError, RetryableConflict)):
        return True

    if isinstance(exc, DBAPIError):
        orig = exc.orig
        sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
        if sqlstate in _CONFLICT_SQLSTATES:
            return True
        message = str(orig or exc).lower()
        return any(m in message for m in _CONFLICT_MESSAGES)

    return False


async def retry_on_conflict(
    operation: Callable[[], Awaitable[T]],
    policy: Optional[RetryPolicy] = None,
    description: str = "atomic unit"
) -> T:
    """
    Run `operation` and re-run it on write conflicts.

    `operation` must be a complete unit (open its own session and
    transaction) so a re-run starts from fresh state.
    """
    policy = policy or RetryPolicy()
    last_error: Optional[BaseException] = None

    for attempt in range(policy.max_attempts):
        try:
            return await operation()
        except Exception as e:
            if not is_write_conflict(e):
                raise
            last_error = e
            logger.warning(
                f"Write conflict in {description} (attempt {attempt + 1}/{policy.max_attempts}): {e}"
            )

        # Wait before retry (if not last attempt)
        if attempt < policy.max_attempts - 1:
            await asyncio.sleep(policy.delay_for(attempt))

    logger.error(f"Giving up on {description} after {policy.max_attempts} attempts: {last_error}")
    raise WriteConflictError(
        f"Concurrent update conflict in {description}; please retry",
        attempts=policy.max_attempts
    ) from last_error
