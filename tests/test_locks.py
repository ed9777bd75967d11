"""Tests for the per-key lock table."""

from __future__ import annotations

import asyncio

import pytest

from codeagent.core.locks import KeyedLocks


class TestKeyedLocks:
    """Serialization per key, and cleanup once a key goes idle."""

    async def test_same_key_runs_in_order(self) -> None:
        locks = KeyedLocks()
        order: list[str] = []

        async def job(name: str, delay: float) -> None:
            async with locks.hold("a.py"):
                order.append(f"{name} start")
                await asyncio.sleep(delay)
                order.append(f"{name} end")

        await asyncio.gather(job("first", 0.02), job("second", 0))
        assert order == ["first start", "first end", "second start", "second end"]

    async def test_different_keys_overlap(self) -> None:
        locks = KeyedLocks()
        inside = asyncio.Event()

        async def holder() -> None:
            async with locks.hold("a.py"):
                inside.set()
                await asyncio.sleep(0.05)

        task = asyncio.ensure_future(holder())
        await inside.wait()
        async with locks.hold("b.py"):
            assert locks.locked("a.py")
        await task

    async def test_entry_dropped_when_idle(self) -> None:
        locks = KeyedLocks()
        async with locks.hold("a.py"):
            assert "a.py" in locks
        assert "a.py" not in locks
        assert len(locks) == 0

    async def test_entry_kept_while_waiters_remain(self) -> None:
        locks = KeyedLocks()
        release = asyncio.Event()

        async def holder() -> None:
            async with locks.hold("k"):
                await release.wait()

        first = asyncio.ensure_future(holder())
        second = asyncio.ensure_future(holder())
        await asyncio.sleep(0.01)
        release.set()
        await first
        assert "k" in locks
        await second
        assert len(locks) == 0

    async def test_cancelled_waiter_releases_entry(self) -> None:
        locks = KeyedLocks()
        release = asyncio.Event()

        async def holder() -> None:
            async with locks.hold("k"):
                await release.wait()

        first = asyncio.ensure_future(holder())
        await asyncio.sleep(0)
        waiter = asyncio.ensure_future(holder())
        await asyncio.sleep(0.01)
        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter
        release.set()
        await first
        assert len(locks) == 0

    async def test_exception_releases_entry(self) -> None:
        locks = KeyedLocks()
        with pytest.raises(RuntimeError):
            async with locks.hold("k"):
                raise RuntimeError("handler failed")
        assert len(locks) == 0
