# utils/scheduler.py
"""Delayed-task queue for claim, trade and pack expiry.

Entries are keyed so they can be replaced, cancelled and inspected. A single
background loop fires whatever is due; tests drive ``run_due`` directly with a
fake clock instead of sleeping.
"""
from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Hashable, Optional

logger = logging.getLogger("bot.scheduler")

Callback = Callable[[], Awaitable[None]]

TICK_SECONDS = 1.0


@dataclass(order=True)
class _Entry:
    due: float
    seq: int
    key: Hashable = field(compare=False)
    callback: Callback = field(compare=False)
    cancelled: bool = field(default=False, compare=False)


class DelayedTaskQueue:
    def __init__(self, *, clock: Callable[[], float] = time.monotonic, tick_seconds: float = TICK_SECONDS):
        self._clock = clock
        self._tick = float(tick_seconds)
        self._heap: list[_Entry] = []
        self._by_key: dict[Hashable, _Entry] = {}
        self._seq = itertools.count()
        self._task: Optional[asyncio.Task] = None

    def now(self) -> float:
        return self._clock()

    def schedule(self, key: Hashable, delay_s: float, callback: Callback) -> None:
        """Run ``callback`` after ``delay_s`` seconds, replacing any task already under ``key``."""
        self.cancel(key)
        entry = _Entry(self._clock() + max(0.0, float(delay_s)), next(self._seq), key, callback)
        self._by_key[key] = entry
        heapq.heappush(self._heap, entry)

    def cancel(self, key: Hashable) -> bool:
        entry = self._by_key.pop(key, None)
        if entry is None:
            return False
        entry.cancelled = True
        return True

    def due_at(self, key: Hashable) -> Optional[float]:
        entry = self._by_key.get(key)
        return entry.due if entry else None

    def __contains__(self, key: Hashable) -> bool:
        return key in self._by_key

    def __len__(self) -> int:
        return len(self._by_key)

    async def run_due(self) -> int:
        """Fire every task whose due time has passed. Returns how many ran."""
        now = self._clock()
        ready: list[_Entry] = []
        while self._heap and self._heap[0].due <= now:
            entry = heapq.heappop(self._heap)
            if entry.cancelled:
                continue
            if self._by_key.get(entry.key) is entry:
                del self._by_key[entry.key]
            ready.append(entry)

        for entry in ready:
            try:
                await entry.callback()
            except Exception:
                logger.exception("Scheduled task failed key=%r", entry.key)
        return len(ready)

    async def _loop(self) -> None:
        logger.info("Scheduler loop started (tick=%ss)", self._tick)
        while True:
            try:
                await self.run_due()
                await asyncio.sleep(self._tick)
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Scheduler tick failed")
                await asyncio.sleep(self._tick)

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
