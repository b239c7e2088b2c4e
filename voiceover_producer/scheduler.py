"""Rolling-window task admission and progress accounting."""

import asyncio
import logging
from typing import Awaitable, Callable, Iterable, TypeVar

from voiceover_producer.constants import (
    MAX_CONCURRENT_SEGMENTS,
    PROGRESS_SYNTHESIS_END,
    PROGRESS_SYNTHESIS_START,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


async def run_rolling_window(
    items: Iterable[T],
    worker: Callable[[T], Awaitable[R]],
    limit: int = MAX_CONCURRENT_SEGMENTS,
) -> list[R]:
    """Run ``worker`` over ``items`` with at most ``limit`` in flight.

    A finished task is replaced by the next queued item straight away, so one
    slow item never holds back a whole batch. Results come back in input
    order. If a worker raises, the remaining tasks are cancelled and the
    exception propagates.
    """
    if limit < 1:
        raise ValueError("limit must be at least 1")

    items = list(items)
    results: list = [None] * len(items)
    in_flight: dict[asyncio.Task, int] = {}
    next_index = 0

    def admit() -> None:
        nonlocal next_index
        while next_index < len(items) and len(in_flight) < limit:
            task = asyncio.ensure_future(worker(items[next_index]))
            in_flight[task] = next_index
            next_index += 1

    admit()
    try:
        while in_flight:
            done, _ = await asyncio.wait(in_flight, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                index = in_flight.pop(task)
                results[index] = task.result()
            admit()
    except BaseException:
        for task in in_flight:
            task.cancel()
        await asyncio.gather(*in_flight, return_exceptions=True)
        raise

    return results


class ProgressTracker:
    """Maps per-item completion onto a percent band that never goes backwards.

    percent = start + span * (done + sum of active fractions) / total
    """

    def __init__(
        self,
        total: int,
        report: Callable[[int, str], None],
        start: int = PROGRESS_SYNTHESIS_START,
        end: int = PROGRESS_SYNTHESIS_END,
    ):
        self.total = max(total, 1)
        self.report = report
        self.start = start
        self.end = end
        self.done = 0
        self.active: dict = {}
        self.percent = start

    def _publish(self, message: str) -> None:
        progress = self.done + sum(self.active.values())
        computed = self.start + (self.end - self.start) * progress / self.total
        self.percent = max(self.percent, min(int(computed), self.end))
        self.report(self.percent, message)

    def update(self, key, fraction: float, message: str = "") -> None:
        """Record partial progress (0..1) for an item still running."""
        self.active[key] = min(max(fraction, 0.0), 1.0)
        self._publish(message)

    def finish(self, key, message: str = "") -> None:
        self.active.pop(key, None)
        self.done += 1
        self._publish(message)
