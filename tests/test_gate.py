"""Tests for the serialization gate."""

import asyncio

import pytest

from foundry_local.errors import ManagerClosed
from foundry_local.gate import SerializationGate


@pytest.mark.asyncio
async def test_runs_in_arrival_order():
    gate = SerializationGate()
    release = asyncio.Event()
    order = []

    async def first():
        order.append("first")
        await release.wait()

    async def op(name):
        order.append(name)

    tasks = [asyncio.create_task(gate.run(first))]
    await asyncio.sleep(0)
    for name in ("a", "b", "c", "d"):
        tasks.append(asyncio.create_task(gate.run(op, name)))
        await asyncio.sleep(0)

    assert gate.busy
    release.set()
    await asyncio.gather(*tasks)
    assert order == ["first", "a", "b", "c", "d"]
    assert not gate.busy


@pytest.mark.asyncio
async def test_operations_never_overlap():
    gate = SerializationGate()
    active = 0
    peak = 0

    async def op():
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.001)
        active -= 1

    await asyncio.gather(*(gate.run(op) for _ in range(10)))
    assert peak == 1


@pytest.mark.asyncio
async def test_released_after_exception():
    gate = SerializationGate()

    async def boom():
        raise ValueError("boom")

    async def ok():
        return 42

    with pytest.raises(ValueError):
        await gate.run(boom)
    assert await gate.run(ok) == 42


@pytest.mark.asyncio
async def test_released_after_cancellation():
    gate = SerializationGate()
    started = asyncio.Event()

    async def slow():
        started.set()
        await asyncio.sleep(30)

    async def ok():
        return "ok"

    task = asyncio.create_task(gate.run(slow))
    await started.wait()
    waiter = asyncio.create_task(gate.run(ok))
    await asyncio.sleep(0)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert await asyncio.wait_for(waiter, 1) == "ok"


@pytest.mark.asyncio
async def test_nested_acquisition_fails_fast():
    gate = SerializationGate()

    async def inner():
        return "inner"

    async def outer():
        return await gate.run(inner)

    with pytest.raises(RuntimeError, match="gate is held"):
        await asyncio.wait_for(gate.run(outer), 1)
    assert not gate.busy


@pytest.mark.asyncio
async def test_closed_gate_rejects_new_and_queued():
    gate = SerializationGate()
    release = asyncio.Event()

    async def hold():
        await release.wait()
        return "held"

    async def queued():
        return "should not run"

    holder = asyncio.create_task(gate.run(hold))
    await asyncio.sleep(0)
    waiter = asyncio.create_task(gate.run(queued))
    await asyncio.sleep(0)

    gate.close()
    release.set()
    assert await holder == "held"
    with pytest.raises(ManagerClosed):
        await waiter
    with pytest.raises(ManagerClosed):
        await gate.run(queued)
