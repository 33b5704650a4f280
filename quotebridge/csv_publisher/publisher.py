import asyncio
import csv
import logging
from typing import Iterator, List, Optional

from quotebridge.common.config import CsvSettings
from quotebridge.common.errors import MalformedRecordError, TransportError
from quotebridge.common.handshake import HandshakeController
from quotebridge.common.metrics import PUBLISH_LATENCY, RECORDS_DROPPED, TRANSPORT_ERRORS
from quotebridge.common.normalize import FileRowNormalizer, dataset_value
from quotebridge.common.symbol_map import SubscriptionRegistry
from quotebridge.common.transport import Transport

log = logging.getLogger("quotebridge.csv")

LOG_EVERY = 1000


def _decoded_lines(f, path: str) -> Iterator[str]:
    # decoded one line at a time so a bad byte only costs its own line
    for line_no, raw in enumerate(f, 1):
        try:
            yield raw.decode("utf-8")
        except UnicodeDecodeError as e:
            RECORDS_DROPPED.labels(reason="malformed").inc()
            log.warning("Line %d of %s dropped: %s", line_no, path, e)


def read_rows(path: str) -> Iterator[List[str]]:
    """Yield stripped cells per line; blank and undecodable lines are skipped."""
    with open(path, "rb") as f:
        for row in csv.reader(_decoded_lines(f, path)):
            cells = [c.strip() for c in row]
            if not any(cells):
                continue
            yield cells


class CsvPublisher(HandshakeController):
    """
    Replays a CSV file to the endpoint once every dataset is granted.

    Unlike the live publisher this waits for all grants before sending the
    first row, then disposes when the file is exhausted.
    """

    def __init__(self, transport: Transport, registry: SubscriptionRegistry, settings: CsvSettings,
                 normalizer: Optional[FileRowNormalizer] = None, stop: Optional[asyncio.Event] = None):
        super().__init__(transport, registry, settings.user, settings.password, stop=stop)
        self.data_file = settings.data_file
        self.dataset_column = settings.dataset_column
        if normalizer is None:
            normalizer = FileRowNormalizer(
                settings.type_id,
                timestamp_column=settings.timestamp_column,
                timestamp_format=settings.timestamp_format,
                field_mappings=registry.field_mappings(),
                source_tz=settings.source_timezone,
            )
        self.normalizer = normalizer
        self.sent = 0
        self.failed = False
        self._batch_task: Optional[asyncio.Future] = None

    async def on_dataset_ready(self, dataset: str):
        if not self.all_publishing():
            return
        if self._batch_task is None:
            log.info("All %d datasets granted, publishing %s", len(self.registry.datasets()), self.data_file)
            self._batch_task = asyncio.ensure_future(self._publish_and_dispose())

    async def _publish_and_dispose(self):
        try:
            await self.publish_file()
        except OSError as e:
            self.failed = True
            log.error("Cannot read %s: %s", self.data_file, e)
        except Exception as e:
            self.failed = True
            log.exception("Batch publish aborted: %s", e)
        finally:
            await self.dispose()

    async def publish_row(self, line_no: int, row: List[str]) -> bool:
        key = dataset_value(row, self.dataset_column)
        if key is None:
            RECORDS_DROPPED.labels(reason="malformed").inc()
            log.warning("Line %d: no dataset column %d", line_no, self.dataset_column)
            return False
        dataset = self.registry.resolve(key)
        if dataset is None:
            RECORDS_DROPPED.labels(reason="unmapped").inc()
            return False
        try:
            with PUBLISH_LATENCY.time():
                document = self.normalizer.normalize(dataset, row)
                return await self.publish(document)
        except MalformedRecordError as e:
            RECORDS_DROPPED.labels(reason="malformed").inc()
            log.warning("Line %d dropped: %s", line_no, e)
        except TransportError as e:
            TRANSPORT_ERRORS.labels(operation="send").inc()
            log.error("Line %d: send to %s failed: %s", line_no, dataset, e)
        return False

    async def publish_file(self) -> int:
        for line_no, row in enumerate(read_rows(self.data_file), 1):
            if self.stop.is_set():
                log.warning("Stop requested, abandoning %s at line %d", self.data_file, line_no)
                break
            if await self.publish_row(line_no, row):
                self.sent += 1
                if self.sent % LOG_EVERY == 0:
                    log.info("PUBLISH %d rows so far", self.sent)
            # cooperative yield so session replies and signals get through
            await asyncio.sleep(0)
        log.info("Published %d rows from %s", self.sent, self.data_file)
        return self.sent
