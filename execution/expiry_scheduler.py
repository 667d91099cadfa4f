"""Fire a callback for each trade when it expires."""
import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

ExpiryCallback = Callable[[str], Awaitable[None]]


class ExpiryScheduler:
    """One asyncio task per scheduled trade id.

    There is no public cancellation per trade: a trade closed early is
    left scheduled and its callback must tolerate finding it settled.
    """

    def __init__(self, callback: ExpiryCallback):
        self._callback = callback
        self._tasks: dict[str, asyncio.Task] = {}

    def schedule(self, trade_id: str, expires_at: datetime, delay: float | None = None):
        """Run the callback for ``trade_id`` at ``expires_at`` (or after ``delay`` seconds)."""
        if delay is None:
            delay = (expires_at - datetime.utcnow()).total_seconds()
        delay = max(0.0, delay)
        previous = self._tasks.get(trade_id)
        if previous is not None and previous is not asyncio.current_task() and not previous.done():
            previous.cancel()
        task = asyncio.create_task(self._run(trade_id, delay), name=f"expire-{trade_id}")
        self._tasks[trade_id] = task
        logger.debug("Expiry scheduled", extra={"trade_id": trade_id, "delay": round(delay, 3)})

    async def _run(self, trade_id: str, delay: float):
        try:
            await asyncio.sleep(delay)
            await self._callback(trade_id)
        finally:
            if self._tasks.get(trade_id) is asyncio.current_task():
                del self._tasks[trade_id]

    @property
    def pending(self) -> int:
        return sum(1 for t in self._tasks.values() if not t.done())

    def is_scheduled(self, trade_id: str) -> bool:
        task = self._tasks.get(trade_id)
        return task is not None and not task.done()

    async def shutdown(self):
        """Cancel all pending expiries and wait for them to finish."""
        tasks = list(self._tasks.values())
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
