# sns_publisher/platforms/retry.py
import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, TypeVar

import structlog

from sns_publisher.exceptions import PublishError

logger = structlog.get_logger(__name__)

T = TypeVar("T")


def is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, PublishError) and exc.retryable


def is_retryable_write(exc: BaseException) -> bool:
    """A write is only repeated when the platform confirmed it did not take effect."""
    return is_retryable(exc) and not exc.outcome_unknown


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded exponential backoff: the delay before retry n (0-based) is
    ``base_delay * 2 ** n``. Errors the classifier rejects propagate immediately.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    classifier: Callable[[BaseException], bool] = field(default=is_retryable)

    def delay_for(self, attempt: int) -> float:
        return self.base_delay * (2 ** attempt)


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    operation_name: Optional[str] = None,
) -> T:
    op_name = operation_name or getattr(operation, "__name__", "operation")
    attempt = 0
    while True:
        try:
            return await operation()
        except Exception as exc:
            if not policy.classifier(exc):
                raise
            if attempt + 1 >= policy.max_attempts:
                logger.error("retry_exhausted", operation=op_name, attempts=attempt + 1, error=str(exc))
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                "retry_scheduled",
                operation=op_name,
                attempt=attempt + 1,
                max_attempts=policy.max_attempts,
                delay=delay,
                error=str(exc),
            )
            await sleep(delay)
            attempt += 1
