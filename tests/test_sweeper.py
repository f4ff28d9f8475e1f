"""Tests for the background expiry sweeper."""

from __future__ import annotations

import asyncio

import pytest

from sandboxer.session.sweeper import ExpirySweeper


class FakeManager:
    def __init__(self, fail_first: bool = False) -> None:
        self.calls = 0
        self._fail_first = fail_first

    async def sweep_expired(self) -> int:
        self.calls += 1
        if self._fail_first and self.calls == 1:
            raise RuntimeError("disk on fire")
        return 1


async def wait_for_calls(manager: FakeManager, count: int) -> None:
    for _ in range(200):
        if manager.calls >= count:
            return
        await asyncio.sleep(0.01)


class TestExpirySweeper:
    @pytest.mark.asyncio
    async def test_sweeps_periodically(self):
        manager = FakeManager()
        sweeper = ExpirySweeper(manager, interval=0.01)
        sweeper.start()
        await wait_for_calls(manager, 3)
        await sweeper.stop()
        assert manager.calls >= 3
        assert sweeper.sweeps >= 3
        assert not sweeper.running

    @pytest.mark.asyncio
    async def test_errors_do_not_stop_the_loop(self):
        manager = FakeManager(fail_first=True)
        async with ExpirySweeper(manager, interval=0.01) as sweeper:
            await wait_for_calls(manager, 3)
        assert manager.calls >= 3
        assert sweeper.sweeps == manager.calls - 1

    @pytest.mark.asyncio
    async def test_start_twice_is_noop(self):
        manager = FakeManager()
        sweeper = ExpirySweeper(manager, interval=10)
        sweeper.start()
        task = sweeper._task
        sweeper.start()
        assert sweeper._task is task
        await sweeper.stop()

    @pytest.mark.asyncio
    async def test_stop_before_first_tick(self):
        manager = FakeManager()
        sweeper = ExpirySweeper(manager, interval=10)
        sweeper.start()
        await sweeper.stop()
        assert manager.calls == 0

    @pytest.mark.asyncio
    async def test_stop_without_start(self):
        await ExpirySweeper(FakeManager()).stop()
