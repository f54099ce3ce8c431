"""Fire-and-forget task submission.

Work submitted here runs after the response has been sent and is never
awaited by the request that scheduled it.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any, Protocol

from fastapi import BackgroundTasks


class TaskScheduler(Protocol):
    def submit(self, func: Callable[..., Awaitable[None]], *args: Any) -> None: ...


class BackgroundTaskScheduler:
    """Submits work to FastAPI's per-response ``BackgroundTasks``.

    Starlette runs the tasks once the response body has been sent, so a
    slow cache write never delays the client.
    """

    def __init__(self, background_tasks: BackgroundTasks) -> None:
        self._background_tasks = background_tasks

    def submit(self, func: Callable[..., Awaitable[None]], *args: Any) -> None:
        self._background_tasks.add_task(func, *args)
