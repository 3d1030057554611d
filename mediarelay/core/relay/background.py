from __future__ import annotations

import inspect
from typing import Any, Callable, Protocol

from loguru import logger
from starlette.background import BackgroundTasks


class BackgroundScheduler(Protocol):
    def schedule_background(
        self, fn: Callable[..., Any], *args: Any, **kwargs: Any
    ) -> None: ...


async def _run_guarded(
    fn: Callable[..., Any], args: tuple[Any, ...], kwargs: dict[str, Any]
) -> None:
    name = getattr(fn, "__qualname__", repr(fn))
    try:
        result = fn(*args, **kwargs)
        if inspect.isawaitable(result):
            await result
        logger.trace("Background task {} finished", name)
    except Exception as exc:
        logger.warning("Background task {} failed: {}", name, exc)


class ResponseBackgroundScheduler:
    """
    Defers work until the response has been handed back to the client.

    Tasks are queued on Starlette `BackgroundTasks` attached to the outgoing
    response, so they run after the body is sent and are never awaited by
    the handler. Failures are logged and swallowed.
    """

    def __init__(self, tasks: BackgroundTasks | None = None):
        self.tasks = tasks if tasks is not None else BackgroundTasks()

    def schedule_background(
        self, fn: Callable[..., Any], *args: Any, **kwargs: Any
    ) -> None:
        self.tasks.add_task(_run_guarded, fn, args, kwargs)

    def __len__(self) -> int:
        return len(self.tasks.tasks)
