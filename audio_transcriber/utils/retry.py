"""Bounded retry with linear backoff.

The attempt loop is explicit: a call is made at most ``max_attempts`` times,
sleeping ``base_delay * attempt`` seconds between attempts. Failures are
classified by a predicate so permanent errors are raised immediately.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from functools import wraps
from typing import Any, TypeVar

from audio_transcriber.utils.errors import TranscriptionError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_retryable_error(exc: BaseException) -> bool:
    """Return True for transcription errors flagged as transient."""
    return isinstance(exc, TranscriptionError) and exc.retryable


async def retry_async(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    max_attempts: int = 3,
    base_delay: float = 1.0,
    should_retry: Callable[[BaseException], bool] = is_retryable_error,
    **kwargs: Any,
) -> T:
    """Call an async function until it succeeds or attempts run out.

    Args:
        func: Coroutine function to call.
        *args: Positional arguments for ``func``.
        max_attempts: Total number of calls allowed (must be >= 1).
        base_delay: Delay unit in seconds; the wait after attempt N is
            ``base_delay * N``.
        should_retry: Predicate deciding whether a failure is transient.
        **kwargs: Keyword arguments for ``func``.

    Returns:
        The value returned by the first successful call.

    Raises:
        The last exception raised by ``func``, with ``_attempts`` attached.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    attempt = 0
    while True:
        attempt += 1
        try:
            return await func(*args, **kwargs)
        except Exception as exc:
            if not should_retry(exc) or attempt >= max_attempts:
                exc._attempts = attempt  # type: ignore[attr-defined]
                raise
            delay = base_delay * attempt
            logger.warning(
                "Retry %d/%d for %s after %.1fs: %s",
                attempt,
                max_attempts - 1,
                getattr(func, "__name__", repr(func)),
                delay,
                exc,
            )
            await asyncio.sleep(delay)


def retry_with_backoff(
    max_attempts: int = 3,
    base_delay: float = 1.0,
    should_retry: Callable[[BaseException], bool] = is_retryable_error,
) -> Callable:
    """Decorator form of :func:`retry_async`."""

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            return await retry_async(
                func,
                *args,
                max_attempts=max_attempts,
                base_delay=base_delay,
                should_retry=should_retry,
                **kwargs,
            )

        return wrapper

    return decorator
