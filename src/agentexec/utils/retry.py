"""Bounded retry of an async operation."""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from ..agents.exceptions import ValidationError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_ATTEMPTS = 5


async def with_retry(
    operation: Callable[[int], Awaitable[T]],
    attempts: int = DEFAULT_ATTEMPTS,
    retry_on: Tuple[Type[BaseException], ...] = (ValidationError,),
    base_delay: float = 0.0,
    agent_id: Optional[str] = None,
) -> T:
    """
    Run ``operation(attempt)`` until it succeeds or ``attempts`` runs are used up.

    ``attempt`` is the zero-based attempt index, so callers can restrict side
    effects (such as forwarding live text) to the first run. Only exceptions
    matching ``retry_on`` trigger another run; anything else propagates
    immediately. The last matching exception is re-raised once the budget is
    exhausted.

    Args:
        operation: Coroutine factory taking the attempt index.
        attempts: Total number of runs allowed (at least 1).
        retry_on: Exception types that trigger a retry.
        base_delay: Seconds to wait before retry ``n``, doubled per attempt.
        agent_id: Attached to log records.
    """
    attempts = max(1, attempts)
    for attempt in range(attempts):
        try:
            return await operation(attempt)
        except retry_on as e:
            if attempt + 1 >= attempts:
                logger.error(
                    f"Max retries ({attempts}) exhausted: {e}",
                    extra={"agent_id": agent_id},
                )
                raise
            delay = base_delay * (2**attempt)
            logger.warning(
                f"Attempt {attempt + 1}/{attempts} failed ({type(e).__name__}: {e}). "
                f"Retrying after {delay:.1f}s",
                extra={"agent_id": agent_id},
            )
            if delay:
                await asyncio.sleep(delay)
    raise RuntimeError("unreachable")
