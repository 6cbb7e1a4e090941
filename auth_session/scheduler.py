"""
Keyed, cancellable timers on the asyncio loop, and the refresh retry schedule.
At most one task exists per key: scheduling always cancels the previous one first.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

from auth_session.config import (
    RECONNECT_POLL_SECONDS,
    REFRESH_BACKOFF_BASE_SECONDS,
    REFRESH_MAX_ATTEMPTS,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """
    Delays for refresh retries after a network failure.
    Attempts 1..max_attempts wait base_delay * attempt**2 (5s, 20s, 45s); after that, poll_interval forever.
    """

    max_attempts: int = REFRESH_MAX_ATTEMPTS
    base_delay: float = REFRESH_BACKOFF_BASE_SECONDS
    poll_interval: float = RECONNECT_POLL_SECONDS

    def is_polling(self, attempt: int) -> bool:
        return attempt > self.max_attempts

    def delay_for(self, attempt: int) -> float:
        if self.is_polling(attempt):
            return self.poll_interval
        return self.base_delay * attempt * attempt


class TaskScheduler:
    def __init__(self):
        self._tasks: dict[str, asyncio.Task] = {}

    def schedule(self, key: str, delay: float, callback: Callable[[], Awaitable[None]]) -> asyncio.Task:
        """Run callback after delay seconds, replacing any timer already set for key."""
        self.cancel(key)
        task = asyncio.get_running_loop().create_task(self._run(key, delay, callback))
        self._tasks[key] = task
        task.add_done_callback(lambda t: self._forget(key, t))
        return task

    async def _run(self, key: str, delay: float, callback: Callable[[], Awaitable[None]]) -> None:
        await asyncio.sleep(max(0.0, delay))
        try:
            await callback()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Scheduled task for '%s' failed", key)

    def _forget(self, key: str, task: asyncio.Task) -> None:
        if self._tasks.get(key) is task:
            del self._tasks[key]

    def cancel(self, key: str) -> None:
        task = self._tasks.pop(key, None)
        # A running callback that reschedules or removes its own key is not cancelled
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    def cancel_all(self) -> None:
        for key in list(self._tasks):
            self.cancel(key)

    def has(self, key: str) -> bool:
        return key in self._tasks

    def keys(self) -> list[str]:
        return list(self._tasks)
