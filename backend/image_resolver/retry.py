"""
Retry Controller

Bounded retries with exponential backoff around one retrieval operation.
The wait before attempt n+1 is 2 ** n * backoff_unit seconds.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from .errors import ImageLoadError, RetryExhausted

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryController:

    def __init__(self, max_attempts: int = 3, backoff_unit: float = 1.0):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.backoff_unit = backoff_unit

    def delay_for(self, attempt: int) -> float:
        return (2 ** attempt) * self.backoff_unit

    async def run(self, operation: Callable[[], Awaitable[T]], label: str = "") -> T:
        """
        Run `operation` until it succeeds or the budget is spent.

        Non-retryable ImageLoadErrors propagate immediately. Anything that is
        not an ImageLoadError is a programming error and propagates as well.

        Raises:
            RetryExhausted: chained to the last attempt's error
        """
        last_error: Optional[ImageLoadError] = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                return await operation()
            except ImageLoadError as e:
                if not e.retryable:
                    raise
                last_error = e
                logger.warning(
                    f"[RetryController] Attempt {attempt}/{self.max_attempts} failed"
                    f"{' for ' + label[:60] if label else ''}: {e}"
                )

            if attempt < self.max_attempts:
                await asyncio.sleep(self.delay_for(attempt))

        logger.error(f"[RetryController] Giving up after {self.max_attempts} attempts: {label[:60]}")
        raise RetryExhausted(self.max_attempts, last_error) from last_error
