"""Bounded retry with linear backoff for external side effects.

Two failure channels are kept apart:

- an exception raised by the operation is a hard failure. It is retried, and
  the normalized error is raised once the final attempt also fails;
- a returned value that ``should_retry`` flags is a soft failure. It is
  retried too, but after the final attempt the last value is returned as-is.
"""

import json
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_ATTEMPTS = 3
DEFAULT_DELAY_MS = 750
DEFAULT_FAILURE_MESSAGE = "Operation failed"


class RetryError(RuntimeError):
    """Raised when a retried operation failed with a non-exception value."""


@dataclass(frozen=True)
class RetryOptions:
    """Attempt budget and base delay for :func:`with_retry`."""
    attempts: int = DEFAULT_ATTEMPTS
    delay_ms: int = DEFAULT_DELAY_MS

    def __post_init__(self) -> None:
        if self.attempts < 1:
            raise ValueError("attempts must be >= 1")
        if self.delay_ms < 0:
            raise ValueError("delay_ms must be >= 0")


def normalize_error(error: Any, fallback: str = DEFAULT_FAILURE_MESSAGE) -> BaseException:
    """Turn whatever an operation failed with into an exception instance.

    Args:
        error: The raised object or failure value.
        fallback: Message used when the value cannot be serialized.

    Returns:
        The original exception, or a RetryError describing the value.
    """
    if isinstance(error, BaseException):
        return error
    if isinstance(error, str):
        return RetryError(error)
    try:
        return RetryError(json.dumps(error))
    except (TypeError, ValueError):
        return RetryError(fallback)


async def with_retry(
    operation: Callable[[int], Awaitable[T]],
    should_retry: Callable[[T], bool],
    options: Optional[RetryOptions] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    fallback_message: str = DEFAULT_FAILURE_MESSAGE,
) -> T:
    """Run ``operation`` up to ``options.attempts`` times.

    Args:
        operation: Async callable receiving the 1-based attempt number.
        should_retry: Returns True when a returned result is not yet successful.
        options: Attempt budget and delay; defaults to 3 attempts / 750ms.
        sleep: Awaitable sleep taking seconds, injectable for tests.
        fallback_message: Message for errors that cannot be described.

    Returns:
        The first successful result, or the last soft-failed result.

    Raises:
        Exception: The normalized error from the final attempt.
    """
    opts = options or RetryOptions()

    for attempt in range(1, opts.attempts + 1):
        final = attempt == opts.attempts
        try:
            result = await operation(attempt)
        except Exception as exc:
            if final:
                raise normalize_error(exc, fallback_message)
            logger.warning(f"Attempt {attempt}/{opts.attempts} raised {type(exc).__name__}, retrying")
        else:
            if final or not should_retry(result):
                return result
            logger.info(f"Attempt {attempt}/{opts.attempts} not yet successful, retrying")

        await sleep(opts.delay_ms * attempt / 1000.0)

    # attempts >= 1 guarantees the loop returns or raises
    raise RetryError(fallback_message)
