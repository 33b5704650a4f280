import asyncio
import logging
from typing import Optional

from quotebridge.common.errors import MalformedRecordError, TransportError
from quotebridge.common.ingest_queue import IngestionQueue
from quotebridge.common.metrics import PUBLISH_LATENCY, RECORDS_DROPPED, TRANSPORT_ERRORS
from quotebridge.common.models import RawTick
from quotebridge.common.normalize import LiveQuoteNormalizer
from quotebridge.common.quote_time import TimestampState
from quotebridge.common.symbol_map import SubscriptionRegistry

log = logging.getLogger("quotebridge.worker")


class PublishWorker:
    """
    Single consumer of the ingestion queue: resolve -> normalize -> publish.

    Owns the TimestampState; nothing else mutates it. One bad record is
    logged and skipped, it never stops the loop.
    """

    def __init__(self, queue: IngestionQueue, registry: SubscriptionRegistry,
                 normalizer: LiveQuoteNormalizer, publisher, stop: asyncio.Event,
                 poll_timeout: float = 10.0):
        self.queue = queue
        self.registry = registry
        self.normalizer = normalizer
        self.publisher = publisher
        self.stop = stop
        self.poll_timeout = poll_timeout
        self.state = TimestampState()
        self.published = 0

    async def run(self):
        log.info("Publish worker started")
        while not self.stop.is_set():
            tick: Optional[RawTick] = await self.queue.poll(self.poll_timeout)
            if tick is None or self.stop.is_set():
                continue
            await self.handle(tick)
        log.info("Publish worker stopped after %d documents", self.published)

    async def handle(self, tick: RawTick) -> bool:
        dataset = self.registry.resolve(tick.source_key)
        if dataset is None:
            RECORDS_DROPPED.labels(reason="unmapped").inc()
            return False
        try:
            with PUBLISH_LATENCY.time():
                document = self.normalizer.normalize(dataset, tick, self.state)
                sent = await self.publisher.publish(document)
        except MalformedRecordError as e:
            RECORDS_DROPPED.labels(reason="malformed").inc()
            log.warning("Dropping malformed tick for %s: %s", tick.source_key, e)
            return False
        except TransportError as e:
            TRANSPORT_ERRORS.labels(operation="send").inc()
            log.error("Send to %s failed: %s", dataset, e)
            return False
        except Exception as e:
            log.exception("Unexpected error publishing %s: %s", tick.source_key, e)
            return False
        if sent:
            self.published += 1
            log.debug("Published %s -> %s (queue size %d)", tick.source_key, dataset, self.queue.qsize())
        return sent
