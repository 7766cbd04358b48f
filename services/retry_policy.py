import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _always_retry(error: Exception) -> bool:
    return True


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry async operations with exponential backoff.

    Shared by the listing resolver and the fetch scheduler. Delays never
    decrease from one attempt to the next.

    Args:
        max_retries: Retries after the first attempt (total attempts = max_retries + 1)
        initial_delay: Delay before the first retry, in seconds
        backoff_factor: Multiplier applied per retry (>= 1)
        max_delay: Upper bound for a single delay
    """

    max_retries: int = 3
    initial_delay: float = 1.0
    backoff_factor: float = 2.0
    max_delay: float = 30.0

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.initial_delay < 0:
            raise ValueError("initial_delay must be >= 0")
        if self.backoff_factor < 1:
            raise ValueError("backoff_factor must be >= 1")

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def delay_for(self, retry_number: int) -> float:
        """Delay before retry ``retry_number`` (1-based)."""
        return min(
            self.initial_delay * (self.backoff_factor ** (retry_number - 1)),
            self.max_delay,
        )

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        description: str = "operation",
        should_retry: Callable[[Exception], bool] = _always_retry,
        on_attempt: Optional[Callable[[int], None]] = None,
    ) -> T:
        """
        Run ``operation`` until it succeeds or the retry budget is spent.

        Args:
            operation: Async callable, invoked once per attempt
            description: Label used in log messages
            should_retry: Returns False for errors that must not be retried
            on_attempt: Called with the 1-based attempt number before each attempt

        Returns:
            The operation's result

        Raises:
            The last exception raised by ``operation``
        """
        last_exception: Optional[Exception] = None

        for attempt in range(1, self.max_attempts + 1):
            if on_attempt is not None:
                on_attempt(attempt)
            try:
                return await operation()
            except Exception as e:
                last_exception = e
                if not should_retry(e):
                    logger.warning(f"{description} failed with non-retryable error: {e}")
                    raise
                if attempt < self.max_attempts:
                    delay = self.delay_for(attempt)
                    logger.warning(
                        f"{description} failed (attempt {attempt}/{self.max_attempts}): "
                        f"{e!r}. Retrying in {delay:.2f}s..."
                    )
                    await asyncio.sleep(delay)
                else:
                    logger.error(
                        f"{description} failed after {self.max_attempts} attempts: {e!r}"
                    )

        raise last_exception
