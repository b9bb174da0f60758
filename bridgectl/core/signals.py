"""Typed notification channels.

Each component exposes a small, fixed set of ``Signal`` attributes instead of a
string-keyed event bus. A signal carries exactly one payload type.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Generic, TypeVar

T = TypeVar("T")

LOGGER = logging.getLogger(__name__)

Handler = Callable[[T], Any]


class Signal(Generic[T]):
    def __init__(self, name: str) -> None:
        self.name = name
        self._handlers: list[Handler[T]] = []
        self._tasks: set[asyncio.Task[Any]] = set()

    def connect(self, handler: Handler[T]) -> Callable[[], None]:
        """Subscribe ``handler`` and return a callable that unsubscribes it."""
        self._handlers.append(handler)
        return lambda: self.disconnect(handler)

    def disconnect(self, handler: Handler[T]) -> None:
        try:
            self._handlers.remove(handler)
        except ValueError:
            pass

    def clear(self) -> None:
        self._handlers.clear()

    def __len__(self) -> int:
        return len(self._handlers)

    def emit(self, value: T) -> None:
        """Deliver ``value`` to every subscriber.

        A failing subscriber is logged and never propagates into the emitting
        component. Coroutine handlers are scheduled on the running loop.
        """
        for handler in list(self._handlers):
            try:
                result = handler(value)
            except Exception:
                LOGGER.exception("Handler for signal '%s' failed", self.name)
                continue
            if inspect.isawaitable(result):
                self._schedule(result)

    def _schedule(self, awaitable: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(awaitable)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.error("Async handler for signal '%s' failed", self.name, exc_info=exc)
