"""Tests for the process-local concurrency gate."""

import asyncio

import pytest

from crmsync.core.concurrency_gate import ConcurrencyGate


@pytest.mark.asyncio
async def test_gate_bounds_concurrent_holders():
    """Test that no more than max_concurrent tasks hold a slot at once."""
    gate = ConcurrencyGate(max_concurrent=2)
    peak = 0

    async def work():
        nonlocal peak
        async with gate:
            peak = max(peak, gate.in_flight)
            await asyncio.sleep(0.01)

    await asyncio.gather(*(work() for _ in range(6)))

    assert peak == 2
    assert gate.in_flight == 0
    assert gate.available == 2


@pytest.mark.asyncio
async def test_slot_released_when_body_raises():
    """Test that an exception inside the gate still frees the slot."""
    gate = ConcurrencyGate(max_concurrent=1)

    with pytest.raises(ValueError):
        async with gate:
            raise ValueError("boom")

    assert gate.in_flight == 0
    await asyncio.wait_for(gate.acquire(), timeout=1)
    gate.release()


@pytest.mark.asyncio
async def test_release_without_acquire_raises():
    """Test that unbalanced release is rejected."""
    gate = ConcurrencyGate(max_concurrent=1)

    with pytest.raises(RuntimeError):
        gate.release()


def test_limit_below_one_becomes_one():
    """Test that a non-positive limit is raised to one."""
    assert ConcurrencyGate(max_concurrent=0).max_concurrent == 1
