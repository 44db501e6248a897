from __future__ import annotations

import asyncio

import pytest

from marketplace_payments.services.scheduler import PeriodicTask


@pytest.mark.asyncio
async def test_failed_run_is_counted_and_swallowed():
    calls = []

    async def job():
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("gateway down")
        return "ok"

    task = PeriodicTask("sync", job, interval_seconds=60)

    assert await task.run_once() is None
    assert await task.run_once() == "ok"
    assert task.runs == 2
    assert task.failures == 1


@pytest.mark.asyncio
async def test_start_runs_immediately_and_stop_cancels():
    ran = asyncio.Event()

    async def job():
        ran.set()

    task = PeriodicTask("sync", job, interval_seconds=3600)
    task.start()
    task.start()  # already running: no second loop
    await asyncio.wait_for(ran.wait(), timeout=1)
    assert task.running

    await task.stop()
    assert not task.running
    assert task.runs == 1


@pytest.mark.asyncio
async def test_run_on_start_can_be_disabled():
    async def job():
        raise AssertionError("should not run")

    task = PeriodicTask("sync", job, interval_seconds=3600, run_on_start=False)
    task.start()
    await asyncio.sleep(0)
    await task.stop()
    assert task.runs == 0


def test_interval_must_be_positive():
    async def job():
        return None

    with pytest.raises(ValueError):
        PeriodicTask("sync", job, interval_seconds=0)
