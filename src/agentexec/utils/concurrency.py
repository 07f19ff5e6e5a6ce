"""Structured fan-out of sibling coroutines."""

import asyncio
from typing import Any, Awaitable, List


def _first_error(group: BaseExceptionGroup) -> BaseException:
    error: BaseException = group
    while isinstance(error, BaseExceptionGroup):
        error = error.exceptions[0]
    return error


async def gather_all(*aws: Awaitable[Any]) -> List[Any]:
    """
    Run ``aws`` concurrently and return their results in order.

    The coroutines share an ``asyncio.TaskGroup``: when one fails the others
    are cancelled and awaited before the first failure is re-raised as
    itself, so no sibling keeps running (or emitting events) after this call
    returns. Cancelling the caller cancels every sibling.
    """
    try:
        async with asyncio.TaskGroup() as group:
            tasks = [group.create_task(aw) for aw in aws]
    except BaseExceptionGroup as eg:
        raise _first_error(eg) from None
    return [task.result() for task in tasks]
