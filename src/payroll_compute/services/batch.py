"""Bounded concurrent execution of per-employee work."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Generic, Sequence, TypeVar

logger = logging.getLogger(__name__)

ItemT = TypeVar("ItemT")
ResultT = TypeVar("ResultT")


class BoundedExecutor(Generic[ItemT, ResultT]):
    """Runs an async worker over items with at most max_concurrency in flight.

    Results come back in item order. Once the cancel event is set no new
    item is started; items not yet started are mapped through on_skip.
    Workers are expected to turn their own failures into results so that
    one item never aborts the others.
    """

    def __init__(self, max_concurrency: int = 8):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.max_concurrency = max_concurrency

    async def run(
        self,
        items: Sequence[ItemT],
        worker: Callable[[ItemT], Awaitable[ResultT]],
        on_skip: Callable[[ItemT], ResultT],
        cancel_event: asyncio.Event | None = None,
    ) -> list[ResultT]:
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def guarded(item: ItemT) -> ResultT:
            async with semaphore:
                if cancel_event is not None and cancel_event.is_set():
                    return on_skip(item)
                return await worker(item)

        logger.info(
            "Dispatching %d items with concurrency %d",
            len(items),
            self.max_concurrency,
            extra={"item_count": len(items), "max_concurrency": self.max_concurrency},
        )
        return list(await asyncio.gather(*(guarded(item) for item in items)))
