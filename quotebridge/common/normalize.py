from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Callable, List, Optional, Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from quotebridge.common.errors import MalformedRecordError
from quotebridge.common.models import FieldMapping, QuoteDocument, RawTick
from quotebridge.common.quote_time import TimestampState, reconstruct, utc_offset_seconds

LIVE_DATETIME_FORMAT = "%Y/%m/%d %H:%M:%S"
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_decimal(text: str) -> Decimal:
    try:
        value = Decimal(text.strip())
    except (InvalidOperation, AttributeError):
        raise MalformedRecordError(f"Not a decimal: {text!r}")
    if not value.is_finite():
        raise MalformedRecordError(f"Not a finite decimal: {text!r}")
    return value


def to_epoch_ms(dt: datetime) -> int:
    return (dt - EPOCH) // timedelta(milliseconds=1)


def load_zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        raise RuntimeError(f"Unknown timezone: {name}")


class LiveQuoteNormalizer:
    """
    Live feed payload "yyyy/mm/dd HH:MM:SS bid ask" -> QuoteDocument.

    The date/time wall values are read as UTC, then shifted by the configured
    DST or standard offset (picked from the current wall clock). Millisecond
    precision is synthesized from arrival order via `reconstruct`.
    """

    def __init__(
        self,
        type_id: str,
        dst_offset_seconds: int = 0,
        std_offset_seconds: int = 0,
        region_tz: str = "America/New_York",
        clock: Callable[[], datetime] = _utc_now,
    ):
        self.type_id = type_id
        self.dst_offset_seconds = dst_offset_seconds
        self.std_offset_seconds = std_offset_seconds
        self.zone = load_zone(region_tz)
        self.clock = clock

    def second_timestamp(self, date_text: str, time_text: str) -> int:
        try:
            wall = datetime.strptime(f"{date_text} {time_text}", LIVE_DATETIME_FORMAT)
        except ValueError:
            raise MalformedRecordError(f"Bad quote time: {date_text} {time_text}")
        offset = utc_offset_seconds(self.clock(), self.dst_offset_seconds,
                                    self.std_offset_seconds, self.zone)
        return to_epoch_ms(wall.replace(tzinfo=timezone.utc)) - offset * 1000

    def normalize(self, dataset: str, tick: RawTick, state: TimestampState) -> QuoteDocument:
        tokens = tick.payload.split()
        if len(tokens) < 4:
            raise MalformedRecordError(
                f"Expected 'date time bid ask' for {tick.source_key}, got {tick.payload!r}")

        quote_time = self.second_timestamp(tokens[0], tokens[1])
        bid = parse_decimal(tokens[2])
        ask = parse_decimal(tokens[3])

        timestamp = reconstruct(quote_time, tick.received_at, state)
        return QuoteDocument(
            dataset=dataset,
            type_id=self.type_id,
            timestamp=timestamp,
            fields={
                "bidPrice": bid,
                "askPrice": ask,
                "spread": ask - bid,
                "quoteTime": quote_time,
            },
        )


class FileRowNormalizer:
    """CSV row -> QuoteDocument using the configured column layout."""

    def __init__(
        self,
        type_id: str,
        timestamp_column: int,
        timestamp_format: str,
        field_mappings: List[FieldMapping],
        source_tz: str = "America/New_York",
    ):
        self.type_id = type_id
        self.timestamp_column = timestamp_column
        self.timestamp_format = timestamp_format
        self.field_mappings = list(field_mappings)
        self.zone = load_zone(source_tz)

    @staticmethod
    def _cell(row: Sequence[str], index: int) -> str:
        if index < 0 or index >= len(row):
            raise MalformedRecordError(f"Row has no column {index}: {list(row)!r}")
        return row[index]

    def parse_timestamp(self, text: str) -> int:
        try:
            dt = datetime.strptime(text.strip(), self.timestamp_format)
        except ValueError:
            raise MalformedRecordError(
                f"Timestamp {text!r} does not match {self.timestamp_format!r}")
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=self.zone)
        return to_epoch_ms(dt.astimezone(timezone.utc))

    def normalize(self, dataset: str, row: Sequence[str]) -> QuoteDocument:
        timestamp = self.parse_timestamp(self._cell(row, self.timestamp_column))
        fields = {}
        for mapping in self.field_mappings:
            fields[mapping.field_name] = parse_decimal(self._cell(row, mapping.column_index))
        return QuoteDocument(dataset=dataset, type_id=self.type_id,
                             timestamp=timestamp, fields=fields)


def dataset_value(row: Sequence[str], column: int) -> Optional[str]:
    if 0 <= column < len(row):
        return row[column]
    return None
