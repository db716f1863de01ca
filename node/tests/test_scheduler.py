"""Tests for periodic session tasks."""

from __future__ import annotations

import asyncio

import pytest

from crowdmesh.core.scheduler import PeriodicTasks


@pytest.mark.asyncio
async def test_task_runs_repeatedly():
    calls = []

    async def tick():
        calls.append(1)

    tasks = PeriodicTasks()
    tasks.start("tick", 0.01, tick)
    await asyncio.sleep(0.08)
    tasks.cancel_all()
    await tasks.wait_cancelled()
    assert len(calls) >= 2


@pytest.mark.asyncio
async def test_cancel_all_stops_work():
    calls = []

    async def tick():
        calls.append(1)

    tasks = PeriodicTasks()
    tasks.start("a", 0.01, tick)
    tasks.start("b", 0.01, tick)
    assert tasks.names() == ["a", "b"]

    tasks.cancel_all()
    await tasks.wait_cancelled()
    seen = len(calls)
    await asyncio.sleep(0.05)
    assert len(calls) == seen
    assert tasks.names() == []


@pytest.mark.asyncio
async def test_failing_task_keeps_running():
    calls = []

    async def flaky():
        calls.append(1)
        raise RuntimeError("boom")

    tasks = PeriodicTasks()
    tasks.start("flaky", 0.01, flaky)
    await asyncio.sleep(0.08)
    tasks.cancel_all()
    await tasks.wait_cancelled()
    assert len(calls) >= 2


@pytest.mark.asyncio
async def test_start_replaces_same_name():
    async def noop():
        pass

    tasks = PeriodicTasks()
    tasks.start("x", 10, noop)
    tasks.start("x", 10, noop)
    assert tasks.names() == ["x"]
    tasks.cancel_all()
    await tasks.wait_cancelled()
