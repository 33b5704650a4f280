from dataclasses import dataclass
from datetime import datetime, timedelta, tzinfo
from typing import Optional

MAX_SYNTHETIC_MS = 999


@dataclass
class TimestampState:
    """
    Bookkeeping for the previous tick: its whole-second timestamp and the
    wall clock it arrived at. One instance per publish worker.
    """
    last_second_timestamp: Optional[int] = None
    last_arrival_time: int = 0
    arrival_increment_counter: int = 0


def reconstruct(event_second_ts: int, arrival_time: int, state: TimestampState) -> int:
    """
    Turn a whole-second event timestamp (epoch ms) into a millisecond one.

    The first tick of a new second keeps offset 0. Later ticks of the same
    second get the wall-clock distance to that first tick, plus a counter
    that breaks ties between identical arrival times, capped at 999 ms.
    """
    if event_second_ts != state.last_second_timestamp:
        state.last_second_timestamp = event_second_ts
        state.last_arrival_time = arrival_time
        state.arrival_increment_counter = 0
        return event_second_ts

    state.arrival_increment_counter += 1
    delta = abs(arrival_time - state.last_arrival_time) + state.arrival_increment_counter
    if delta > MAX_SYNTHETIC_MS:
        delta = MAX_SYNTHETIC_MS
    return event_second_ts + delta


def in_daylight_saving(now: datetime, zone: tzinfo) -> bool:
    dst = now.astimezone(zone).dst()
    return dst is not None and dst != timedelta(0)


def utc_offset_seconds(now: datetime, dst_offset: int, std_offset: int, zone: tzinfo) -> int:
    # Checks whether *now* is in DST, not the quote's own time; wrong around
    # DST transitions and for replayed history.
    if in_daylight_saving(now, zone):
        return dst_offset
    return std_offset
