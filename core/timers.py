"""Cancellable periodic and one-shot asyncio timers."""

import asyncio
from typing import Awaitable, Callable, Optional

from core.logging_utils import get_logger

logger = get_logger(__name__)

AsyncCallback = Callable[[], Awaitable[None]]


class PeriodicTask:
    """Runs ``callback`` every ``interval`` seconds until stopped.

    The callback is awaited inside the loop, so ticks never overlap; a slow
    tick delays the next one instead of stacking. Errors are logged and the
    loop keeps going.
    """

    def __init__(self, name: str, interval: float, callback: AsyncCallback):
        self.name = name
        self.interval = interval
        self.callback = callback
        self._task: Optional[asyncio.Task] = None
        self.ticks = 0
        self.errors = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> bool:
        """Start the loop. Returns False if it was already running."""
        if self.is_running:
            return False
        self._task = asyncio.create_task(self._loop(), name=self.name)
        logger.info("[TIMER] %s started (every %.1fs)", self.name, self.interval)
        return True

    def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        # Stopping from inside our own tick lets the tick finish; the loop
        # notices it is no longer the current task and exits.
        if not task.done() and task is not asyncio.current_task():
            task.cancel()
        logger.info("[TIMER] %s stopped", self.name)

    async def _loop(self):
        me = asyncio.current_task()
        while self._task is me:
            try:
                await asyncio.sleep(self.interval)
                if self._task is not me:
                    break
                await self.callback()
                self.ticks += 1
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.errors += 1
                logger.warning("[TIMER] %s tick failed: %s", self.name, e, exc_info=True)


def schedule_once(delay: float, callback: AsyncCallback, name: str = "one-shot") -> asyncio.Task:
    """Await ``callback`` after ``delay`` seconds. Cancel the returned task to abort."""

    async def _run():
        try:
            await asyncio.sleep(delay)
            await callback()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("[TIMER] %s failed: %s", name, e, exc_info=True)

    return asyncio.create_task(_run(), name=name)
