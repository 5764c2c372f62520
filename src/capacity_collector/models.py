"""Core data models for capacity-collector.

Defines the schemas for:
- Cluster filters (which series belong to which cluster)
- Query results (sample streams, per-cluster results)
- Query ranges (instant, ranged and exemplar call shapes)
- Exporter scrape information (discovered per cluster)
- Workload rows (time and values decoded from a sample)
"""

from __future__ import annotations

import enum
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from pydantic import BaseModel, Field

# --- Enums ---


class MergePolicy(enum.StrEnum):
    """What to do when two result maps share a cluster key."""

    FAIL = "fail"
    IGNORE = "ignore"
    OVERRIDE = "override"


class CallShape(enum.StrEnum):
    INSTANT = "instant"
    RANGE = "range"
    EXEMPLAR = "exemplar"


class CollectionInterval(enum.StrEnum):
    DAYS = "days"
    HOURS = "hours"
    MINUTES = "minutes"


# --- Cluster Filter Schema ---


class ClusterFilterSpec(BaseModel):
    """A cluster declared in the config file.

    ``identifiers`` is the label set that identifies the cluster's series
    in the shared monitoring backend. An empty set is the catch-all filter,
    which is only valid when it is the only cluster.
    """

    name: str = Field(..., min_length=1)
    identifiers: dict[str, str] = Field(default_factory=dict)


# --- Query Results ---


@dataclass(frozen=True)
class Sample:
    """A single (timestamp, value) pair. Timestamp is Unix seconds."""

    timestamp: float
    value: float

    @property
    def is_finite(self) -> bool:
        return not (math.isnan(self.value) or math.isinf(self.value))


@dataclass(frozen=True)
class SampleStream:
    """A labeled time series."""

    labels: dict[str, str]
    samples: list[Sample] = field(default_factory=list)

    def label(self, name: str) -> str | None:
        return self.labels.get(name)

    def last_value(self) -> float:
        if not self.samples:
            return 0.0
        return self.samples[-1].value


Matrix = list[SampleStream]


@dataclass
class Result:
    """The outcome of one query for one cluster (or one shared query)."""

    query: str
    matrix: Matrix = field(default_factory=list)
    error: Exception | None = None

    @property
    def has_data(self) -> bool:
        return self.error is None and len(self.matrix) > 0


ClusterResultMap = dict[str, Result]


# --- Query Range ---


@dataclass(frozen=True)
class QueryRange:
    """Time bounds of a query.

    ``start is None`` selects an instant query evaluated at ``end``.
    ``step is None`` on a ranged query lets the executor use the minimum
    scrape interval found while adjusting the query.
    """

    start: datetime | None = None
    end: datetime | None = None
    step: timedelta | None = None

    @classmethod
    def instant(cls, at: datetime | None = None) -> QueryRange:
        return cls(start=None, end=at, step=None)

    @property
    def is_instant(self) -> bool:
        return self.start is None

    def with_step(self, step: timedelta) -> QueryRange:
        return QueryRange(start=self.start, end=self.end, step=step)


# --- Scrape Intervals ---


@dataclass(frozen=True)
class ClusterExporterInfo:
    """Discovered scrape cadence of one exporter in one cluster."""

    exporter_name: str
    metric_prefix: str
    prom_job_name: str = ""
    actual_scrape_interval: timedelta = timedelta(0)
    up_scrape_interval: timedelta = timedelta(0)

    @property
    def scrape_interval(self) -> timedelta:
        """Exporter estimate if known, otherwise the ``up`` estimate."""
        if self.actual_scrape_interval > timedelta(0):
            return self.actual_scrape_interval
        return self.up_scrape_interval


# --- Workload Rows ---


@dataclass(frozen=True)
class TimeAndValues:
    """Decoded row data for one sample: when, what, and how many times."""

    time: float
    values: str
    count: int = 1
