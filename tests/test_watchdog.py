"""
Tests for the stall watchdog
"""

import asyncio

import pytest

from media_job_worker.core.exceptions import StalledError
from media_job_worker.core.watchdog import StallWatchdog


class TestStallWatchdog:

    @pytest.mark.asyncio
    async def test_returns_result(self):
        async def quick():
            return "done"

        assert await StallWatchdog(0.05, "fetch", "a").watch(quick()) == "done"

    @pytest.mark.asyncio
    async def test_progress_keeps_unit_alive(self):
        watchdog = StallWatchdog(0.05, "transform", "a")

        async def chatty():
            for percent in range(10):
                watchdog.beat(percent)
                await asyncio.sleep(0.02)
            return "encoded"

        assert await watchdog.watch(chatty()) == "encoded"
        assert watchdog.beats == 10
        assert watchdog.last_value == 9

    @pytest.mark.asyncio
    async def test_silent_unit_stalls(self):
        cancelled = asyncio.Event()

        async def silent():
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                cancelled.set()
                raise

        with pytest.raises(StalledError) as exc_info:
            await StallWatchdog(0.05, "fetch", "a").watch(silent())

        assert exc_info.value.unit == "a"
        assert exc_info.value.error_code == "UNIT_STALLED"
        assert cancelled.is_set()

    @pytest.mark.asyncio
    async def test_unit_error_propagates(self):
        async def broken():
            raise OSError("disk gone")

        with pytest.raises(OSError):
            await StallWatchdog(0.05, "fetch", "a").watch(broken())
