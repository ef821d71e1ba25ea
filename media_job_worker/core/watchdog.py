"""
Stall detection for long-running stage units.

A unit that reports progress through its callback is watched in fixed
intervals; two consecutive intervals without any report fail the unit with
StalledError. This is independent of the unit's total time budget.
"""

import asyncio
from typing import Any, Awaitable, Optional

from .exceptions import StalledError


class StallWatchdog:
    """Watches a single unit invocation."""

    missed_intervals_allowed = 2

    def __init__(self, interval: float, stage: str, unit: Optional[str] = None):
        self.interval = interval
        self.stage = stage
        self.unit = unit
        self._beats = 0
        self.last_value: Any = None

    def beat(self, value: Any = None):
        """Record progress. Passed to the unit as its progress callback."""
        self._beats += 1
        self.last_value = value

    @property
    def beats(self) -> int:
        return self._beats

    async def watch(self, awaitable: Awaitable[Any]) -> Any:
        """
        Await ``awaitable`` while watching for progress.

        Raises:
            StalledError: If no progress was reported for two consecutive intervals
        """
        task = asyncio.ensure_future(awaitable)
        missed = 0
        seen = self._beats

        try:
            while True:
                done, _ = await asyncio.wait({task}, timeout=self.interval)
                if task in done:
                    return task.result()

                if self._beats == seen:
                    missed += 1
                else:
                    missed = 0
                    seen = self._beats

                if missed >= self.missed_intervals_allowed:
                    task.cancel()
                    await asyncio.gather(task, return_exceptions=True)
                    raise StalledError(self.stage, self.unit, missed * self.interval)
        finally:
            if not task.done():
                task.cancel()
