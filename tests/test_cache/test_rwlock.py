"""Tests for the asyncio reader/writer lock."""

from __future__ import annotations

import asyncio

from enphase_monitor.cache.rwlock import ReadWriteLock


class TestReadWriteLock:
    async def test_readers_share(self) -> None:
        lock = ReadWriteLock()
        async with lock.read():
            async with lock.read():
                assert lock.readers == 2
        assert lock.readers == 0

    async def test_writer_waits_for_readers(self) -> None:
        lock = ReadWriteLock()
        order: list[str] = []

        async def writer() -> None:
            async with lock.write():
                order.append("write")

        async with lock.read():
            task = asyncio.create_task(writer())
            await asyncio.sleep(0.01)
            assert order == []
            assert not lock.write_locked
        await task
        assert order == ["write"]

    async def test_writers_are_exclusive(self) -> None:
        lock = ReadWriteLock()
        active = 0
        peak = 0

        async def writer() -> None:
            nonlocal active, peak
            async with lock.write():
                active += 1
                peak = max(peak, active)
                await asyncio.sleep(0.005)
                active -= 1

        await asyncio.gather(*(writer() for _ in range(5)))
        assert peak == 1

    async def test_waiting_writer_blocks_new_readers(self) -> None:
        lock = ReadWriteLock()
        order: list[str] = []
        release = asyncio.Event()

        async def first_reader() -> None:
            async with lock.read():
                order.append("r1")
                await release.wait()

        async def writer() -> None:
            async with lock.write():
                order.append("w")

        async def second_reader() -> None:
            async with lock.read():
                order.append("r2")

        t1 = asyncio.create_task(first_reader())
        await asyncio.sleep(0.01)
        t2 = asyncio.create_task(writer())
        await asyncio.sleep(0.01)
        t3 = asyncio.create_task(second_reader())
        await asyncio.sleep(0.01)
        assert order == ["r1"]

        release.set()
        await asyncio.gather(t1, t2, t3)
        assert order == ["r1", "w", "r2"]
