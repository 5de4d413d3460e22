"""Cancellable delayed jobs keyed by entity id.

Bid expiry and transient-notification withdrawal both run "N seconds from now
unless something else happens first". Each job is registered under a string key
(``bid-expiry:<bid_id>``, ``transient:<user_id>:<listing_id>``) so the code path
that wins the race can cancel the timer instead of letting it fire.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

logger = logging.getLogger(__name__)

JobFactory = Callable[[], Awaitable[Any]]


class TaskScheduler:
    def __init__(self) -> None:
        self._jobs: dict[str, asyncio.Task[Any]] = {}
        # Every task still running, including jobs already past their delay.
        self._running: set[asyncio.Task[Any]] = set()

    def schedule(self, key: str, delay_seconds: float, job: JobFactory) -> bool:
        """Run ``job()`` after ``delay_seconds``. Replaces any job with the same key.

        Returns False when there is no running event loop to schedule on.
        """
        self.cancel(key)
        coro = self._run(key, delay_seconds, job)
        try:
            task = asyncio.create_task(coro, name=key)
        except RuntimeError:
            coro.close()
            logger.warning("No running loop, dropped scheduled job %s", key)
            return False
        self._jobs[key] = task
        self._running.add(task)
        task.add_done_callback(self._on_done)
        return True

    async def _run(self, key: str, delay_seconds: float, job: JobFactory) -> None:
        try:
            await asyncio.sleep(max(delay_seconds, 0))
            # Past the sleep the job can no longer be cancelled by key.
            self._jobs.pop(key, None)
            await job()
        finally:
            current = self._jobs.get(key)
            if current is not None and current is asyncio.current_task():
                self._jobs.pop(key, None)

    def _on_done(self, task: asyncio.Task[Any]) -> None:
        self._running.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Scheduled job %s failed", task.get_name(), exc_info=exc)

    def cancel(self, key: str) -> bool:
        task = self._jobs.pop(key, None)
        if task is None or task.done():
            return False
        task.cancel()
        logger.debug("Cancelled scheduled job %s", key)
        return True

    def cancel_prefix(self, prefix: str) -> int:
        keys = [k for k in self._jobs if k.startswith(prefix)]
        return sum(1 for k in keys if self.cancel(k))

    def cancel_all(self) -> int:
        return self.cancel_prefix("")

    def is_scheduled(self, key: str) -> bool:
        task = self._jobs.get(key)
        return task is not None and not task.done()

    def pending_keys(self) -> list[str]:
        return sorted(k for k, t in self._jobs.items() if not t.done())

    async def drain(self, timeout_seconds: float = 1.0) -> None:
        """Wait for jobs that are already running, cancelling any that overrun."""
        pending = {task for task in self._running if not task.done()}
        if not pending:
            return
        _, overrun = await asyncio.wait(pending, timeout=timeout_seconds)
        for task in overrun:
            task.cancel()
        if overrun:
            await asyncio.gather(*overrun, return_exceptions=True)


scheduler = TaskScheduler()


def bid_expiry_key(bid_id: str) -> str:
    return f"bid-expiry:{bid_id}"


def transient_key(user_id: str, listing_id: str) -> str:
    return f"transient:{user_id}:{listing_id}"
