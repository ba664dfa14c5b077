"""Named recurring wake-ups on the asyncio event loop."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Alarm:
    name: str
    period_seconds: float


AlarmListener = Callable[[Alarm], None]


class AlarmService:
    """Schedules recurring alarms and notifies listeners when they fire.

    Listeners are called synchronously on the event loop; a failing listener
    is logged and does not stop the others or the alarm.
    """

    def __init__(self):
        self._tasks: dict[str, asyncio.Task] = {}
        self._listeners: list[AlarmListener] = []

    def add_listener(self, listener: AlarmListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: AlarmListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def has_listener(self, listener: AlarmListener) -> bool:
        return listener in self._listeners

    def create(self, name: str, period_seconds: float, delay_seconds: float | None = None) -> Alarm:
        """(Re)register an alarm. Must be called from a running event loop."""
        self.clear(name)
        alarm = Alarm(name=name, period_seconds=period_seconds)
        delay = period_seconds if delay_seconds is None else delay_seconds
        self._tasks[name] = asyncio.get_running_loop().create_task(self._run(alarm, delay))
        return alarm

    def clear(self, name: str) -> bool:
        task = self._tasks.pop(name, None)
        if task is None:
            return False
        task.cancel()
        return True

    def clear_all(self) -> None:
        for name in list(self._tasks):
            self.clear(name)

    def is_scheduled(self, name: str) -> bool:
        task = self._tasks.get(name)
        return task is not None and not task.done()

    async def _run(self, alarm: Alarm, delay: float) -> None:
        await asyncio.sleep(delay)
        while True:
            self._fire(alarm)
            await asyncio.sleep(alarm.period_seconds)

    def _fire(self, alarm: Alarm) -> None:
        for listener in list(self._listeners):
            try:
                listener(alarm)
            except Exception as e:
                logger.error("Alarm listener failed for %s: %s", alarm.name, e)
