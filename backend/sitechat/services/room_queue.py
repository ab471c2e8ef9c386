"""
Per-room ordering primitives.

RoomLocks serializes persist-then-broadcast pairs within a room, so the order
clients observe equals the order rows were written. RoomTaskQueue runs
orchestration jobs one at a time per room, in submission order, without
blocking the ingestion path or other rooms.
"""

import asyncio
from typing import Awaitable, Callable, Optional

import structlog

from sitechat.core.logging_config import room_context

logger = structlog.get_logger(__name__)

Job = Callable[[], Awaitable[object]]


class RoomLocks:
    """One asyncio.Lock per room key."""

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}

    def lock(self, room_key: str) -> asyncio.Lock:
        lock = self._locks.get(room_key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[room_key] = lock
        return lock

    def __len__(self) -> int:
        return len(self._locks)


class RoomTaskQueue:
    """
    Serial job queues keyed by room.

    A worker task is started when a room receives its first job and exits
    once the room's queue is empty. A failing job is logged and the next one
    still runs.
    """

    def __init__(self):
        self._queues: dict[str, asyncio.Queue] = {}
        self._workers: dict[str, asyncio.Task] = {}

    def submit(self, room_key: str, job: Job) -> None:
        queue = self._queues.get(room_key)
        if queue is None:
            queue = asyncio.Queue()
            self._queues[room_key] = queue
        queue.put_nowait(job)

        if room_key not in self._workers:
            self._workers[room_key] = asyncio.create_task(
                self._run(room_key, queue), name=f"room-worker:{room_key}"
            )

    async def _run(self, room_key: str, queue: asyncio.Queue) -> None:
        try:
            with room_context(room_key):
                while True:
                    try:
                        job = queue.get_nowait()
                    except asyncio.QueueEmpty:
                        break

                    try:
                        await job()
                    except Exception as e:
                        logger.exception("Room job failed", room=room_key, error=str(e))
                    finally:
                        queue.task_done()
        finally:
            self._workers.pop(room_key, None)
            if queue.empty():
                self._queues.pop(room_key, None)

    def pending(self, room_key: Optional[str] = None) -> int:
        """Jobs waiting to start (excludes the one currently running)."""
        if room_key:
            queue = self._queues.get(room_key)
            return queue.qsize() if queue else 0
        return sum(q.qsize() for q in self._queues.values())

    def active_rooms(self) -> list[str]:
        return list(self._workers.keys())

    async def drain(self) -> None:
        """Wait until every room's queue has been worked off."""
        while self._workers:
            await asyncio.gather(*list(self._workers.values()), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel outstanding work."""
        workers = list(self._workers.values())
        for worker in workers:
            worker.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        self._workers.clear()
        self._queues.clear()
