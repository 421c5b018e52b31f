"""
Wallet lifecycle notifications.
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum

from loguru import logger


class SyncEvent(str, Enum):
    SYNC_STARTED = "sync_started"
    SYNC_FINISHED = "sync_finished"
    SYNC_FAILED = "sync_failed"


@dataclass(frozen=True)
class WalletEvent:
    kind: SyncEvent
    reason: str | None = None


Listener = Callable[[WalletEvent], Awaitable[None] | None]


class EventEmitter:
    """
    Fire-and-forget observer list.

    Listeners are called in subscription order. Coroutine listeners are
    scheduled as tasks and not awaited. A failing listener is logged and does
    not affect the others or the emitter.
    """

    def __init__(self) -> None:
        self._listeners: list[Listener] = []
        self._tasks: set[asyncio.Task] = set()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns a callable that unsubscribes it."""
        self._listeners.append(listener)
        return lambda: self.unsubscribe(listener)

    def unsubscribe(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def emit(self, event: WalletEvent) -> None:
        logger.debug(f"Emitting {event.kind.value}" + (f": {event.reason}" if event.reason else ""))

        for listener in list(self._listeners):
            try:
                result = listener(event)
            except Exception as e:
                logger.error(f"Event listener {listener!r} failed on {event.kind.value}: {e}")
                continue

            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Async event listener failed: {task.exception()}")

    async def drain(self) -> None:
        """Wait for scheduled async listeners (used on shutdown and in tests)."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
