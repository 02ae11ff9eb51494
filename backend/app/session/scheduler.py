from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

logger = logging.getLogger("app.session.scheduler")

PendingAction = Callable[[], Awaitable[None]]


class PendingWriteScheduler:
    """Single-slot deferred action per key.

    Scheduling a key cancels whatever was pending for it and installs a new
    deadline, so a burst of calls collapses into the last one.
    """

    def __init__(self, name: str = "pending"):
        self._name = name
        self._pending: dict[str, asyncio.Task] = {}
        self._actions: dict[str, PendingAction] = {}

    def schedule(self, key: str, action: PendingAction, delay_sec: float) -> asyncio.Task:
        previous = self._pending.pop(key, None)
        if previous is not None and not previous.done():
            previous.cancel()
        task = asyncio.create_task(self._run_later(key, action, max(0.0, float(delay_sec))))
        self._pending[key] = task
        self._actions[key] = action
        return task

    async def _run_later(self, key: str, action: PendingAction, delay_sec: float) -> None:
        try:
            await asyncio.sleep(delay_sec)
            # Past this point the action is committed; it is no longer cancellable by a reschedule.
            if self._pending.get(key) is asyncio.current_task():
                self._pending.pop(key, None)
                self._actions.pop(key, None)
            await action()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("%s action failed | key=%s err=%s", self._name, key, exc)

    def is_pending(self, key: str) -> bool:
        task = self._pending.get(key)
        return task is not None and not task.done()

    def cancel(self, key: str) -> bool:
        task = self._pending.pop(key, None)
        self._actions.pop(key, None)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    async def cancel_all(self) -> None:
        tasks = list(self._pending.values())
        self._pending.clear()
        self._actions.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def flush_all(self) -> None:
        """Run every pending action now instead of at its deadline."""
        pending = [(key, task, self._actions.get(key)) for key, task in self._pending.items()]
        self._pending.clear()
        self._actions.clear()
        for _, task, _ in pending:
            task.cancel()
        await asyncio.gather(*(task for _, task, _ in pending), return_exceptions=True)
        for key, _, action in pending:
            if action is None:
                continue
            try:
                await action()
            except Exception as exc:
                logger.warning("%s flush failed | key=%s err=%s", self._name, key, exc)

    def __len__(self) -> int:
        return sum(1 for task in self._pending.values() if not task.done())
