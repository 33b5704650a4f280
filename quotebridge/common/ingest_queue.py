import asyncio
import threading
from typing import Optional

from quotebridge.common.metrics import QUEUE_DEPTH
from quotebridge.common.models import RawTick


class IngestionQueue:
    """
    Unbounded FIFO between the feed callback and the publish worker.

    `offer` never blocks and may be called from the event loop thread or
    from a feed driver's own threads. Must be created inside the running loop.
    """
    def __init__(self):
        self._queue: "asyncio.Queue[RawTick]" = asyncio.Queue()
        self._loop = asyncio.get_running_loop()
        self._loop_thread = threading.get_ident()

    def offer(self, tick: RawTick):
        if threading.get_ident() == self._loop_thread:
            self._put(tick)
        else:
            self._loop.call_soon_threadsafe(self._put, tick)

    def _put(self, tick: RawTick):
        self._queue.put_nowait(tick)
        QUEUE_DEPTH.set(self._queue.qsize())

    async def poll(self, timeout: float) -> Optional[RawTick]:
        try:
            tick = await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None
        QUEUE_DEPTH.set(self._queue.qsize())
        return tick

    def qsize(self) -> int:
        return self._queue.qsize()
