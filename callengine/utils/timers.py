"""
Cancellable asyncio timers.

Each timer owns at most one task; starting it again replaces the previous
task and cancelling is always safe, including from inside the callback.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Optional, Union

LOG = logging.getLogger(__name__)

TimerCallback = Callable[[], Union[None, Awaitable[Any]]]


async def _invoke(callback: TimerCallback) -> None:
    result = callback()
    if inspect.isawaitable(result):
        await result


class OneShotTimer:
    """Fire ``callback`` once after ``delay`` seconds unless cancelled."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._task: Optional[asyncio.Task] = None

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, delay: float, callback: TimerCallback) -> None:
        self.cancel()
        self._task = asyncio.get_running_loop().create_task(
            self._run(delay, callback), name=f"timer:{self.name}"
        )

    async def _run(self, delay: float, callback: TimerCallback) -> None:
        await asyncio.sleep(max(0.0, float(delay)))
        try:
            await _invoke(callback)
        except asyncio.CancelledError:
            raise
        except Exception:
            LOG.exception("Timer %s callback failed.", self.name)

    def cancel(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done():
            return
        if task is asyncio.current_task():
            # Cancelling from inside the callback: let it finish on its own.
            return
        task.cancel()


class PeriodicTimer:
    """Invoke ``callback`` every ``interval`` seconds until cancelled."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._task: Optional[asyncio.Task] = None

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, interval: float, callback: TimerCallback) -> None:
        self.cancel()
        self._task = asyncio.get_running_loop().create_task(
            self._run(max(0.001, float(interval)), callback), name=f"periodic:{self.name}"
        )

    async def _run(self, interval: float, callback: TimerCallback) -> None:
        current = asyncio.current_task()
        # A cancel() issued from inside the callback clears _task and ends the loop.
        while self._task is current:
            await asyncio.sleep(interval)
            if self._task is not current:
                break
            try:
                await _invoke(callback)
            except asyncio.CancelledError:
                raise
            except Exception:  # pragma: no cover - observer failures should not stop the tick
                LOG.exception("Periodic timer %s callback failed.", self.name)

    def cancel(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done():
            return
        if task is asyncio.current_task():
            return
        task.cancel()
