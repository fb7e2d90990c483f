##########################################################################################
#
# Script name: scheduler.py
#
# Description: Runs a batch of coroutines under a concurrency ceiling, letting every
#              task settle on its own.
#
##########################################################################################

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, Sequence, TypeVar


# ****************************************************************************************
# Global data and configuration
# ****************************************************************************************

log = logging.getLogger(__name__)

T = TypeVar('T')

TaskFactory = Callable[[], Awaitable[T]]


# ****************************************************************************************
# Classes
# ****************************************************************************************


@dataclass
class TaskOutcome(Generic[T]):
    index: int
    value: T | None = None
    error: Exception | None = None
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None


class BoundedScheduler:
    '''
    At most `limit` tasks are in flight at once. A failing task never cancels
    its siblings: its exception is captured in the task's `TaskOutcome`.

    `on_settled` runs on the event loop right after each task finishes and
    before the optional `delay`, so completion callbacks never overlap even
    though the tasks do. The delay is awaited while the slot is still held,
    which paces the downstream service independently of the ceiling.
    '''

    def __init__(
        self,
        limit: int,
        delay: float = 0.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        name: str = 'scheduler',
    ):
        self.limit = max(1, int(limit))
        self.delay = max(0.0, float(delay))
        self.name = name
        self._sleep = sleep

    async def run(
        self,
        tasks: Sequence[TaskFactory],
        on_settled: Callable[[TaskOutcome], None] | None = None,
        should_delay: Callable[[TaskOutcome], bool] | None = None,
    ) -> list[TaskOutcome]:
        if not tasks:
            return []
        semaphore = asyncio.Semaphore(self.limit)
        log.debug('%s: running %d task(s) with limit=%d delay=%.2fs', self.name, len(tasks), self.limit, self.delay)

        async def _run_one(index: int, factory: TaskFactory) -> TaskOutcome:
            async with semaphore:
                started = time.monotonic()
                outcome = TaskOutcome(index=index)
                try:
                    outcome.value = await factory()
                except Exception as exc:  # noqa: BLE001
                    outcome.error = exc
                    log.debug('%s: task %d failed: %s', self.name, index, exc)
                outcome.duration = time.monotonic() - started

                if on_settled is not None:
                    on_settled(outcome)

                if self.delay > 0 and (should_delay is None or should_delay(outcome)):
                    await self._sleep(self.delay)
                return outcome

        return list(await asyncio.gather(*(_run_one(index, factory) for index, factory in enumerate(tasks))))
