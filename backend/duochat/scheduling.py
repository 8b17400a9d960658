"""Cancelable timers and background tasks owned by one component.

Every delayed side effect in the engine (typing timeouts, the seen delay,
pending-update expiry, voice uploads, socket emits) is registered with a
``TaskScheduler`` so that tearing a component down cancels all of it as a
unit. Nothing scheduled here may fire after ``close()``.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Hashable, Optional, Set

logger = logging.getLogger(__name__)


class TaskScheduler:
    """Keyed timers plus tracked tasks on the running event loop."""

    def __init__(self, name: str = "scheduler") -> None:
        self.name = name
        self._timers: Dict[Hashable, asyncio.TimerHandle] = {}
        self._tasks: Set[asyncio.Task] = set()  # type: ignore[type-arg]
        self._closed = False

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    def call_later(
        self,
        key: Hashable,
        delay: float,
        callback: Callable[..., Any],
        *args: Any,
    ) -> bool:
        """Run *callback* after *delay* seconds, replacing any timer under *key*.

        Returns:
            False if the scheduler is closed and nothing was scheduled.
        """
        if self._closed:
            logger.debug("[%s] Refusing timer %r after close", self.name, key)
            return False
        self.cancel(key)
        loop = asyncio.get_running_loop()
        self._timers[key] = loop.call_later(
            max(0.0, delay), self._fire, key, callback, args
        )
        return True

    def _fire(self, key: Hashable, callback: Callable[..., Any], args: tuple) -> None:
        self._timers.pop(key, None)
        try:
            callback(*args)
        except Exception:
            logger.exception("[%s] Timer %r raised", self.name, key)

    def cancel(self, key: Hashable) -> bool:
        """Cancel the timer under *key*; returns True if one was pending."""
        handle = self._timers.pop(key, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def is_scheduled(self, key: Hashable) -> bool:
        return key in self._timers

    @property
    def pending_timers(self) -> int:
        return len(self._timers)

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def spawn(
        self, coro: Awaitable[Any], name: Optional[str] = None
    ) -> Optional[asyncio.Task]:  # type: ignore[type-arg]
        """Start a tracked task. Returns None (and closes *coro*) after close."""
        if self._closed:
            if asyncio.iscoroutine(coro):
                coro.close()
            logger.debug("[%s] Refusing task %s after close", self.name, name)
            return None
        task = asyncio.ensure_future(coro)
        if name:
            task.set_name(name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:  # type: ignore[type-arg]
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("[%s] Task %s failed: %s", self.name, task.get_name(), exc)

    @property
    def running_tasks(self) -> int:
        return len(self._tasks)

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Cancel every timer and task without waiting for them to unwind."""
        self._closed = True
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        for task in list(self._tasks):
            task.cancel()

    async def aclose(self) -> None:
        """Cancel everything and wait until cancelled tasks have finished."""
        tasks = list(self._tasks)
        self.close()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
