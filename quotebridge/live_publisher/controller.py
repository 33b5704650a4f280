import asyncio
import logging
import time
from typing import Callable, Optional, Set

from quotebridge.common.config import LiveSettings
from quotebridge.common.errors import TransportError
from quotebridge.common.handshake import HandshakeController, HandshakeState
from quotebridge.common.ingest_queue import IngestionQueue
from quotebridge.common.models import RawTick
from quotebridge.common.normalize import LiveQuoteNormalizer
from quotebridge.common.symbol_map import SubscriptionRegistry
from quotebridge.common.transport import Transport
from quotebridge.live_publisher.feed import WebSocketQuoteFeed
from quotebridge.live_publisher.worker import PublishWorker

log = logging.getLogger("quotebridge.live")


def _now_ms() -> int:
    return int(time.time() * 1000)


class LivePublisher(HandshakeController):
    """
    Live feed -> ingestion queue -> publish worker -> endpoint.

    Each dataset grant starts advisory subscriptions for the source keys
    mapped to it, without waiting for other datasets. `feed_enabled` is the
    platform capability flag: when off, the feed is never touched.
    """

    def __init__(self, transport: Transport, registry: SubscriptionRegistry, settings: LiveSettings,
                 feed=None, normalizer: Optional[LiveQuoteNormalizer] = None,
                 clock_ms: Callable[[], int] = _now_ms, stop: Optional[asyncio.Event] = None):
        super().__init__(transport, registry, settings.user, settings.password, stop=stop)
        self.settings = settings
        self.feed_enabled = settings.feed_enabled
        self.clock_ms = clock_ms
        self.queue = IngestionQueue()
        if feed is None:
            feed = WebSocketQuoteFeed(settings.feed_url, self.on_item, self.on_feed_disconnect)
        else:
            feed.on_item = self.on_item
            feed.on_disconnect = self.on_feed_disconnect
        self.feed = feed
        if normalizer is None:
            normalizer = LiveQuoteNormalizer(
                settings.type_id,
                dst_offset_seconds=settings.dst_offset_seconds,
                std_offset_seconds=settings.standard_offset_seconds,
                region_tz=settings.dst_region_tz,
            )
        self.worker = PublishWorker(self.queue, registry, normalizer, self, self.stop,
                                    poll_timeout=settings.queue_poll_seconds)
        self._worker_task: Optional[asyncio.Task] = None
        self._feed_connected = False
        self._tasks: Set[asyncio.Task] = set()

    # ----------------------------
    # Feed side
    # ----------------------------
    def on_item(self, source_key: str, payload: str):
        self.queue.offer(RawTick(received_at=self.clock_ms(), source_key=source_key, payload=payload))

    def on_feed_disconnect(self):
        log.warning("Feed reported disconnect, disposing")
        task = asyncio.ensure_future(self.dispose())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def connect_feed(self):
        if not self.feed_enabled:
            log.warning("Quote feed unavailable on this platform, running without subscriptions")
            return
        await self.feed.connect(self.settings.feed_channel, self.settings.feed_topic)
        self._feed_connected = True
        self.state = HandshakeState.FEED_CONNECTED
        log.info("Connected to %s", self.settings.feed_channel)

    async def disconnect_feed(self):
        if not self._feed_connected:
            return
        self._feed_connected = False
        try:
            await self.feed.disconnect()
        except Exception as e:
            log.warning("Feed disconnect failed: %s", e)

    # ----------------------------
    # Handshake hooks
    # ----------------------------
    async def start(self):
        self._worker_task = asyncio.create_task(self.worker.run())
        try:
            await super().start()
        except BaseException:
            self._worker_task.cancel()
            raise

    async def on_dataset_ready(self, dataset: str):
        if not self.feed_enabled:
            return
        for key in self.registry.keys_for(dataset):
            log.info("Subscribe to %s", key)
            try:
                await self.feed.start_subscription(key)
            except TransportError as e:
                log.error("Could not start subscription for %s: %s", key, e)

    async def join_worker(self, timeout: float):
        """Wait for the worker to notice the stop signal; cancel it past `timeout`."""
        if self._worker_task is None or self._worker_task.done():
            return
        try:
            await asyncio.wait_for(self._worker_task, timeout=timeout)
        except asyncio.TimeoutError:
            log.warning("Publish worker did not stop within %.1fs", timeout)
