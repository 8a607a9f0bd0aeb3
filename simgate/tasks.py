import asyncio
import functools
import logging
from typing import Any, Awaitable, Callable, Optional, TypeVar

T = TypeVar("T")


def create_handled_task(
    coroutine: Awaitable[T],
    *,
    message: str,
    message_args: tuple[Any, ...] = (),
    error_handler: Optional[Callable] = None,
    name: Optional[str] = None,
) -> "asyncio.Task[T]":
    """
    Schedule `coroutine` as a task whose failure gets logged instead of
    vanishing with the task object.

    `message` and `message_args` form the log line on failure;
    `error_handler` (plain or async) runs after it.
    """
    task = asyncio.create_task(coroutine, name=name)  # type: ignore
    task.add_done_callback(
        functools.partial(
            log_task_result,
            message=message,
            message_args=message_args,
            error_handler=error_handler,
        )
    )
    return task


def log_task_result(
    task: asyncio.Task,
    *,
    message: str,
    message_args: tuple[Any, ...] = (),
    error_handler: Optional[Callable] = None,
) -> None:
    label = task.get_name()
    if task.cancelled():
        logging.info("%s cancelled", label)
        return
    error = task.exception()
    if error is None:
        logging.info("%s done: %s", label, task.result())
        return
    logging.error(message, *message_args, exc_info=error)
    if error_handler is None:
        return
    if asyncio.iscoroutinefunction(error_handler):
        asyncio.create_task(error_handler())
    else:
        error_handler()


async def notify(sink: Optional[Callable], *args: Any) -> None:
    """Call a sync or async observer. Its failures are logged and dropped."""
    if sink is None:
        return
    try:
        result = sink(*args)
        if asyncio.iscoroutine(result) or isinstance(result, asyncio.Future):
            await result
    except Exception:  # pylint: disable=broad-except
        logging.exception("observer %s failed", getattr(sink, "__name__", sink))
