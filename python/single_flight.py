"""
Single-flight execution keyed by string

Concurrent callers for the same key share one execution. The work runs in its
own task, detached from whichever caller started it, and every caller awaits
that task through a shield: cancelling any caller, including the first, only
stops that caller from waiting. The key stays held until the work itself
finishes, so a failed attempt can be retried by the next caller but a running
one is never duplicated.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Generic, TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)


class SingleFlight(Generic[T]):
    def __init__(self, name: str):
        self.name = name
        self._inflight: Dict[str, "asyncio.Future[T]"] = {}

    def in_flight(self, key: str) -> bool:
        return key in self._inflight

    def __len__(self) -> int:
        return len(self._inflight)

    async def do(self, key: str, work: Callable[[], Awaitable[T]]) -> T:
        # No await between lookup and insert, so the event loop serializes callers
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(work())
            self._inflight[key] = task
            task.add_done_callback(lambda done: self._release(key, done))
        else:
            logger.debug(f"{self.name}: joining in-flight work for {key}")

        return await asyncio.shield(task)

    def _release(self, key: str, task: "asyncio.Future[T]") -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        if not task.cancelled():
            # Mark retrieved so a failure nobody awaited is not reported again
            task.exception()
