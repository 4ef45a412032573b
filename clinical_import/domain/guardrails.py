"""Domain Guardrails - Retry Policy and Cancellation.

This module provides the two resilience primitives the pipeline relies on:
an explicit ``RetryPolicy`` applied at the storage boundary, and a
cooperative ``CancellationToken`` checked between top-level records.

Architecture:
    - Pure domain logic with no infrastructure dependencies
    - Retry is decoupled from business logic so it can be tested against a
      fault-injecting storage fake
    - Cancellation is cooperative; nothing is interrupted mid-record
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from clinical_import.domain.ports import ImportCancelledError, TransientStorageError

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_MARKERS = (
    "not connected",
    "database is locked",
    "sqlite_busy",
    "sqlite_misuse",
    "connection already closed",
)


def is_transient_error(error: BaseException) -> bool:
    """Return True for failures worth retrying.

    Recognizes ``TransientStorageError``, timeouts, and messages carrying one
    of the known connection/lock markers.
    """
    if isinstance(error, (TransientStorageError, asyncio.TimeoutError)):
        return True
    message = str(error).lower()
    return any(marker in message for marker in TRANSIENT_MARKERS)


@dataclass(frozen=True)
class RetryPolicy:
    """Retry configuration for storage calls.

    Attributes:
        max_attempts: Total attempts including the first one
        backoff_seconds: Base delay; attempt ``n`` waits ``backoff_seconds * n``
        timeout_seconds: Optional per-call timeout (None disables it)
    """
    max_attempts: int = 3
    backoff_seconds: float = 0.1
    timeout_seconds: Optional[float] = None

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.backoff_seconds < 0:
            raise ValueError("backoff_seconds must not be negative")

    def delay_for(self, attempt: int) -> float:
        """Linear backoff delay after the given (1-based) failed attempt."""
        return self.backoff_seconds * attempt

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        description: str = "storage operation",
        on_attempt: Optional[Callable[[int], None]] = None,
    ) -> T:
        """Await ``operation`` applying timeout and retry rules.

        Parameters:
            operation: Zero-argument coroutine factory, called once per attempt
            description: Label used in log messages
            on_attempt: Optional callback receiving the attempt number

        Returns:
            The operation's result

        Raises:
            The last error when attempts are exhausted, or any non-transient
            error immediately.
        """
        attempt = 0
        while True:
            attempt += 1
            if on_attempt is not None:
                on_attempt(attempt)
            try:
                if self.timeout_seconds is not None:
                    return await asyncio.wait_for(operation(), timeout=self.timeout_seconds)
                return await operation()
            except Exception as e:
                if not is_transient_error(e):
                    raise
                if attempt >= self.max_attempts:
                    logger.error(
                        f"{description} failed after {attempt} attempts: {str(e)}",
                        extra={"attempts": attempt},
                    )
                    raise
                delay = self.delay_for(attempt)
                logger.warning(
                    f"Transient failure in {description} (attempt {attempt}/{self.max_attempts}), "
                    f"retrying in {delay:.2f}s: {str(e)}"
                )
                await asyncio.sleep(delay)


class CancellationToken:
    """Cooperative cancellation flag checked between records."""

    def __init__(self) -> None:
        self._cancelled = False
        self._reason: Optional[str] = None

    def cancel(self, reason: str = "Import cancelled") -> None:
        self._cancelled = True
        self._reason = reason

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise ImportCancelledError(self._reason or "Import cancelled")
