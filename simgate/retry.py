# Copyright (c) 2021 MobileCoin Inc.
# Copyright (c) 2021 The Forest Team
import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, TypeVar

T = TypeVar("T")


async def with_retry(
    attempt: Callable[[], Awaitable[T]],
    *,
    attempts: int = 3,
    base_delay: float = 1.0,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    on_retry: Optional[Callable[[int, BaseException], Any]] = None,
) -> T:
    """
    Await `attempt()` until it returns, at most `attempts` times.
    Waits base_delay, 2*base_delay, 4*base_delay... between tries.
    Only exceptions in `retry_on` are retried; anything else propagates at once,
    as does the last failure once attempts run out.
    """
    if attempts < 1:
        raise ValueError("attempts must be at least 1")
    for attempt_number in range(1, attempts + 1):
        try:
            return await attempt()
        except retry_on as e:  # pylint: disable=broad-except
            if attempt_number == attempts:
                raise
            backoff = base_delay * 2 ** (attempt_number - 1)
            logging.info(
                "attempt %s failed (%s), retrying in %ss", attempt_number, e, backoff
            )
            if on_retry:
                on_retry(attempt_number, e)
            await asyncio.sleep(backoff)
    raise AssertionError("unreachable")
