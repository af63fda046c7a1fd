"""
Named recurring timers on the asyncio event loop.

The coordinator registers two alarms: a daily reset at local midnight and
a time-tracking tick roughly every minute. Alarm callbacks that raise are
logged and the alarm keeps running.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

AlarmListener = Callable[[str], Awaitable[None]]


def next_midnight(now: datetime) -> datetime:
    """Start of the next local calendar day."""
    return datetime.combine(now.date() + timedelta(days=1), datetime.min.time())


class AlarmScheduler:
    """
    Recurring named alarms.

    Creating an alarm with an existing name replaces it.
    """

    def __init__(self, clock: Callable[[], datetime] = datetime.now) -> None:
        self.clock = clock
        self._tasks: Dict[str, asyncio.Task] = {}
        self._listeners: List[AlarmListener] = []

    def add_listener(self, listener: AlarmListener) -> None:
        self._listeners.append(listener)

    def create(
        self,
        name: str,
        period_seconds: float,
        first_at: Optional[datetime] = None,
    ) -> None:
        """
        Schedule an alarm.

        Args:
            name: Alarm name passed to listeners.
            period_seconds: Interval between firings.
            first_at: First firing time; one period from now when None.
        """
        if period_seconds <= 0:
            raise ValueError("Alarm period must be positive")

        self.clear(name)
        if first_at is None:
            delay = period_seconds
        else:
            delay = max(0.0, (first_at - self.clock()).total_seconds())

        self._tasks[name] = asyncio.create_task(
            self._run(name, delay, period_seconds), name=f"alarm:{name}"
        )
        logger.debug(f"Alarm {name} set: first in {delay:.0f}s, every {period_seconds:.0f}s")

    def clear(self, name: str) -> bool:
        task = self._tasks.pop(name, None)
        if task is None:
            return False
        task.cancel()
        return True

    async def shutdown(self) -> None:
        """Cancel every alarm and wait for the tasks to finish."""
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    def names(self) -> List[str]:
        return sorted(self._tasks)

    async def fire(self, name: str) -> None:
        """Deliver an alarm to every listener now."""
        for listener in list(self._listeners):
            try:
                await listener(name)
            except Exception as e:
                logger.error(f"Alarm {name} listener failed: {e}", exc_info=True)

    async def _run(self, name: str, delay: float, period: float) -> None:
        await asyncio.sleep(delay)
        while True:
            await self.fire(name)
            await asyncio.sleep(period)
