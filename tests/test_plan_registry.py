from __future__ import annotations

import asyncio
import time

import pytest

from planforge.orchestration.registry import CancellationToken, RunRegistry


@pytest.mark.asyncio
async def test_token_sleep_runs_full_interval_when_not_cancelled() -> None:
    token = CancellationToken()

    assert await token.sleep(0.01) is False
    assert await token.sleep(0) is False
    assert token.cancelled is False


@pytest.mark.asyncio
async def test_cancel_wakes_a_long_sleep_promptly() -> None:
    token = CancellationToken()
    sleeper = asyncio.create_task(token.sleep(30))
    await asyncio.sleep(0)

    started = time.monotonic()
    token.cancel()
    woken = await asyncio.wait_for(sleeper, timeout=1)

    assert woken is True
    assert time.monotonic() - started < 1


@pytest.mark.asyncio
async def test_sleep_after_cancel_returns_immediately() -> None:
    token = CancellationToken()
    token.cancel()

    assert await asyncio.wait_for(token.sleep(30), timeout=1) is True


@pytest.mark.asyncio
async def test_acquire_is_exclusive_per_plan() -> None:
    registry = RunRegistry()

    token = registry.acquire("p1")

    assert token is not None
    assert registry.acquire("p1") is None
    assert registry.acquire("p2") is not None
    assert registry.is_active("p1")
    assert sorted(registry.active_plan_ids()) == ["p1", "p2"]
    assert registry.active_count() == 2


@pytest.mark.asyncio
async def test_release_ignores_stale_tokens() -> None:
    registry = RunRegistry()
    stale = CancellationToken()
    token = registry.acquire("p1")
    assert token is not None

    registry.release("p1", stale)
    assert registry.is_active("p1")

    registry.release("p1", token)
    assert not registry.is_active("p1")
    assert registry.acquire("p1") is not None


@pytest.mark.asyncio
async def test_cancel_signals_the_run_once() -> None:
    registry = RunRegistry()
    token = registry.acquire("p1")
    assert token is not None

    assert registry.cancel("p1") is True
    assert token.cancelled
    assert registry.cancel("p1") is False
    assert registry.cancel("unknown") is False
    # the entry stays until the run releases it
    assert registry.is_active("p1")
