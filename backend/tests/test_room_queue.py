"""
Tests for per-room serial job queues.
"""

import asyncio

import pytest

from sitechat.services.room_queue import RoomLocks, RoomTaskQueue


def job(log, name, delay=0.0, fail=False):
    async def run():
        log.append(f"start {name}")
        await asyncio.sleep(delay)
        if fail:
            raise RuntimeError(name)
        log.append(f"end {name}")
    return run


@pytest.mark.asyncio
class TestRoomTaskQueue:
    """Test RoomTaskQueue ordering and isolation."""

    async def test_jobs_run_in_submission_order(self):
        queue = RoomTaskQueue()
        log = []

        queue.submit("session:1", job(log, "a", delay=0.05))
        queue.submit("session:1", job(log, "b"))
        queue.submit("session:1", job(log, "c"))
        await queue.drain()

        assert log == ["start a", "end a", "start b", "end b", "start c", "end c"]

    async def test_rooms_run_concurrently(self):
        queue = RoomTaskQueue()
        log = []

        queue.submit("session:1", job(log, "slow", delay=0.1))
        queue.submit("session:2", job(log, "fast"))
        await queue.drain()

        assert log.index("end fast") < log.index("end slow")

    async def test_failed_job_does_not_stop_queue(self):
        queue = RoomTaskQueue()
        log = []

        queue.submit("session:1", job(log, "bad", fail=True))
        queue.submit("session:1", job(log, "good"))
        await queue.drain()

        assert log == ["start bad", "start good", "end good"]

    async def test_worker_cleans_up_when_idle(self):
        queue = RoomTaskQueue()
        log = []

        queue.submit("session:1", job(log, "a"))
        assert queue.active_rooms() == ["session:1"]
        await queue.drain()

        assert queue.active_rooms() == []
        assert queue.pending() == 0

    async def test_shutdown_cancels_pending_work(self):
        queue = RoomTaskQueue()
        log = []

        queue.submit("session:1", job(log, "long", delay=5))
        queue.submit("session:1", job(log, "never"))
        await asyncio.sleep(0)
        await queue.shutdown()

        assert "start never" not in log
        assert queue.active_rooms() == []


@pytest.mark.asyncio
class TestRoomLocks:
    """Test RoomLocks."""

    async def test_same_room_same_lock(self):
        locks = RoomLocks()
        assert locks.lock("session:1") is locks.lock("session:1")
        assert locks.lock("session:1") is not locks.lock("session:2")
        assert len(locks) == 2
