"""
Per-stream groups of asyncio tasks.

Every timer a stream owns (uptime monitor, preview capture, segment health
check, reconnect backoff and the one-shot deferred passes) is registered in
that stream's TimerBundle under a name, so stop/delete/exit can cancel them
together.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

AsyncCallback = Callable[[], Awaitable[None]]

# Well-known timer names
MONITOR = "monitor"
SCREENSHOT = "screenshot"
SEGMENT_HEALTH = "segment_health"
RECONNECT = "reconnect"
INITIAL_HEALTH_CHECK = "initial_health_check"
RESOLUTION_DETECT = "resolution_detect"


class TimerBundle:
    def __init__(self, stream_id: str):
        self.stream_id = stream_id
        self._tasks: Dict[str, asyncio.Task] = {}

    def __contains__(self, name: str) -> bool:
        task = self._tasks.get(name)
        return task is not None and not task.done()

    def __len__(self) -> int:
        return len(self.active())

    def active(self) -> List[str]:
        return [name for name, task in self._tasks.items() if not task.done()]

    def get(self, name: str) -> Optional[asyncio.Task]:
        return self._tasks.get(name)

    def schedule(self, name: str, coro: Awaitable) -> asyncio.Task:
        """Run coro as the timer called name, replacing any timer of that name."""
        self.cancel(name)
        task = asyncio.create_task(coro, name=f"{self.stream_id}:{name}")
        self._tasks[name] = task
        task.add_done_callback(lambda t, n=name: self._forget(n, t))
        return task

    def call_later(self, name: str, delay: float, callback: AsyncCallback) -> asyncio.Task:
        return self.schedule(name, self._run_later(name, delay, callback))

    def call_every(self, name: str, interval: float, callback: AsyncCallback,
                   initial_delay: Optional[float] = None) -> asyncio.Task:
        return self.schedule(
            name, self._run_every(name, interval, callback, initial_delay))

    def cancel(self, name: str) -> bool:
        """
        Cancel the timer called name. A task never cancels itself, so a timer
        callback may safely trigger code paths that cancel its own name.
        """
        task = self._tasks.get(name)
        if task is None or task.done():
            return False
        if task is asyncio.current_task():
            self._tasks.pop(name, None)
            return False
        task.cancel()
        self._tasks.pop(name, None)
        return True

    def cancel_all(self, keep: Optional[List[str]] = None) -> int:
        keep = keep or []
        cancelled = 0
        for name in list(self._tasks.keys()):
            if name in keep:
                continue
            if self.cancel(name):
                cancelled += 1
        return cancelled

    def _forget(self, name: str, task: asyncio.Task) -> None:
        if self._tasks.get(name) is task:
            del self._tasks[name]

    async def _run_later(self, name: str, delay: float, callback: AsyncCallback):
        try:
            await asyncio.sleep(delay)
            await callback()
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error(f"Timer {name} for stream {self.stream_id} failed: {e}")

    async def _run_every(self, name: str, interval: float, callback: AsyncCallback,
                         initial_delay: Optional[float]):
        first = interval if initial_delay is None else initial_delay
        try:
            await asyncio.sleep(first)
        except asyncio.CancelledError:
            return
        while True:
            try:
                await callback()
                await asyncio.sleep(interval)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Timer {name} for stream {self.stream_id} failed: {e}")
                try:
                    await asyncio.sleep(interval)
                except asyncio.CancelledError:
                    break
