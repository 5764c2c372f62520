"""Query providers: the time range of each historical window and the decoding
of each sample into a CSV row."""

from __future__ import annotations

import math
from datetime import datetime, timedelta
from typing import Protocol, runtime_checkable

from capacity_collector.config import CollectionSettings
from capacity_collector.models import QueryRange, Sample, TimeAndValues
from capacity_collector.workload.output import format_value


@runtime_checkable
class QueryProvider(Protocol):
    """Supplies the range of window *i* (0 = newest) and decodes its samples."""

    def calculate_range(self, history_index: int) -> QueryRange:
        ...

    def time_and_values(self, sample: Sample) -> TimeAndValues:
        ...


def window_range(
    collection: CollectionSettings,
    current_time: datetime,
    history_index: int,
    windows: int = 1,
    step: timedelta | None = None,
) -> QueryRange:
    """Range of *windows* interval units ending *history_index* units before *current_time*."""
    unit = collection.unit
    end = current_time - unit * history_index
    return QueryRange(start=end - unit * windows, end=end, step=step)


class HistoryRangeProvider:
    """Plain sampled metrics: one window per interval unit, ``sample_rate`` step."""

    def __init__(self, collection: CollectionSettings, current_time: datetime) -> None:
        self._collection = collection
        self._current_time = current_time

    def calculate_range(self, history_index: int) -> QueryRange:
        return window_range(self._collection, self._current_time, history_index, step=self._collection.step)

    def time_and_values(self, sample: Sample) -> TimeAndValues:
        return TimeAndValues(time=sample.timestamp, values=format_value(sample.value))


EXIT_CODE_FACTOR = 1000
IS_PID1_FACTOR = 10000
RESIDUAL_FACTOR = IS_PID1_FACTOR // EXIT_CODE_FACTOR
FRACTION_OFFSET = 0.5


class ProcessExitEventProvider:
    """Decodes process-exit events packed into a single sample value.

    The producing query packs four things into one float:

    - integer part: the event count, or the event timestamp multiplied by
      the count when the exact time is known;
    - fraction: ``0.5 + exit_code / 1000 + (not is_pid1) / 10000``, so it
      always lies in ``0.5000..0.7551``. The ``0.5`` offset keeps float
      error from pulling the fraction below the encoded value.

    An integer part smaller than the earliest plausible timestamp (window
    start minus one step) is a bare count and the sample's own timestamp is
    used. This depends on the exact numeric ranges above; treat it as a
    contract with the query that produces the value.

    The range has no step, so the executor steps by the smallest scrape
    interval found when it adjusts the query.
    """

    def __init__(self, collection: CollectionSettings, current_time: datetime) -> None:
        self._collection = collection
        self._current_time = current_time
        self._range: QueryRange | None = None

    def calculate_range(self, history_index: int) -> QueryRange:
        self._range = window_range(self._collection, self._current_time, history_index)
        return self._range

    def time_and_values(self, sample: Sample) -> TimeAndValues:
        if self._range is None or self._range.start is None:
            raise RuntimeError("calculate_range must be called before decoding samples")
        earliest = int((self._range.start - self._collection.step).timestamp())
        fraction, integer = math.modf(sample.value)
        n = int(round(integer))
        count = n // earliest
        if count == 0:
            t = sample.timestamp
            count = n
        else:
            t = float(n // count)

        f = (fraction - FRACTION_OFFSET) * EXIT_CODE_FACTOR
        exit_code = round(f)
        is_pid1 = round(abs(f - exit_code) * RESIDUAL_FACTOR) == 0
        return TimeAndValues(time=t, values=f"{exit_code},{str(is_pid1).lower()}", count=count)
