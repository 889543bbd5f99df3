"""
In-process background work: supervised task group + per-key locks

TaskSupervisor
  Owns every fire-and-forget coroutine the API starts after it has already
  answered the caller (pipeline continuation after upload, bulk repair).
  Tasks are held by strong reference until done; a failure is logged,
  counted and kept on a bounded error channel exposed via stats().

KeyedLock
  One asyncio.Lock per key (document id). Guarantees at most one in-flight
  pipeline or delete per document. Entries are dropped when the last
  holder/waiter leaves, so the registry does not grow with every id ever seen.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import AsyncIterator, Awaitable, Hashable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TaskFailure:
    task_id:   str
    name:      str
    error:     str
    failed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class TaskSupervisor:

    def __init__(self, max_failures_kept: int = 50) -> None:
        self._tasks: dict[str, asyncio.Task] = {}
        self._failures: deque[TaskFailure] = deque(maxlen=max_failures_kept)
        self._started   = 0
        self._succeeded = 0
        self._failed    = 0
        self._cancelled = 0
        self._closed    = False

    def spawn(self, coro: Awaitable, name: str) -> str:
        """Schedule `coro` on the running loop. Returns the supervisor task id."""
        if self._closed:
            # Close the coroutine so it is not reported as never awaited.
            if asyncio.iscoroutine(coro):
                coro.close()
            raise RuntimeError("TaskSupervisor is shut down")

        task_id = str(uuid.uuid4())
        task = asyncio.ensure_future(coro)
        self._tasks[task_id] = task
        self._started += 1
        task.add_done_callback(lambda t: self._on_done(task_id, name, t))
        logger.info("Background task spawned | task_id=%s name=%s", task_id, name)
        return task_id

    def _on_done(self, task_id: str, name: str, task: asyncio.Task) -> None:
        self._tasks.pop(task_id, None)
        if task.cancelled():
            self._cancelled += 1
            logger.warning("Background task cancelled | task_id=%s name=%s", task_id, name)
            return

        exc = task.exception()
        if exc is None:
            self._succeeded += 1
            logger.info("Background task done | task_id=%s name=%s", task_id, name)
            return

        self._failed += 1
        self._failures.append(TaskFailure(task_id=task_id, name=name, error=f"{type(exc).__name__}: {exc}"))
        logger.error(
            "Background task failed | task_id=%s name=%s error=%s",
            task_id, name, exc,
            exc_info=(type(exc), exc, exc.__traceback__),
        )

    @property
    def active(self) -> int:
        return len(self._tasks)

    def stats(self) -> dict:
        return {
            "active":    self.active,
            "started":   self._started,
            "succeeded": self._succeeded,
            "failed":    self._failed,
            "cancelled": self._cancelled,
            "recent_failures": [
                {"task_id": f.task_id, "name": f.name, "error": f.error, "failed_at": f.failed_at.isoformat()}
                for f in self._failures
            ],
        }

    async def join(self, timeout: float | None = None) -> None:
        """Wait until every currently running task has finished."""
        pending = list(self._tasks.values())
        if pending:
            await asyncio.wait(pending, timeout=timeout)

    async def shutdown(self, timeout: float = 10.0) -> None:
        """Stop accepting work, give running tasks `timeout` seconds, then cancel the rest."""
        self._closed = True
        pending = list(self._tasks.values())
        if not pending:
            return
        logger.info("Supervisor shutdown | waiting_on=%d timeout=%.1fs", len(pending), timeout)
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)


class KeyedLock:

    def __init__(self) -> None:
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._users: dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def locked(self, key: Hashable) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)
