"""First-successful-of-N combinator for competing async strategies."""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Iterable, Optional, TypeVar

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


def _is_present(value: object) -> bool:
    return value is not None


async def first_successful(
    attempts: Iterable[Awaitable[T]],
    timeout: Optional[float] = None,
    is_success: Callable[[T], bool] = _is_present,
) -> Optional[T]:
    """Run ``attempts`` concurrently and return the first successful result.

    An attempt fails when it raises or returns a value rejected by
    ``is_success``. As soon as one attempt succeeds the others are
    cancelled and awaited, so none of them keeps working in the
    background.

    Parameters
    ----------
    attempts : iterable of awaitables
        Competing strategies
    timeout : float, optional
        Overall deadline in seconds; ``None`` waits for all attempts
    is_success : callable
        Predicate on a result, defaults to "is not None"

    Returns
    -------
    T or None
        Winning result, or None if every attempt failed or time ran out
    """
    pending = {asyncio.ensure_future(attempt) for attempt in attempts}
    if not pending:
        return None

    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout if timeout is not None else None
    try:
        while pending:
            remaining = None if deadline is None else max(0.0, deadline - loop.time())
            done, pending = await asyncio.wait(
                pending, timeout=remaining, return_when=asyncio.FIRST_COMPLETED
            )
            if not done:
                LOGGER.debug("No attempt succeeded within %.1fs", timeout)
                return None
            for task in done:
                if task.cancelled():
                    continue
                exc = task.exception()
                if exc is not None:
                    LOGGER.debug("Attempt failed: %s", exc)
                    continue
                result = task.result()
                if is_success(result):
                    return result
        return None
    finally:
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
