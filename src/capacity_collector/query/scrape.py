"""Scrape-interval discovery and range-vector window adjustment.

``rate``, ``increase`` and ``changes`` need a window at least as large as the
scrape interval of the series they read, otherwise they return gaps or
zeros. Exporters are scraped at different cadences per cluster, so the
cadence is measured: a probe counts the samples of a representative metric
over a fixed lookback, and ``lookback / count`` is the estimate.

Usage::

    reconciler = ScrapeIntervalReconciler(collection, prober=executor.probe)
    query, step = reconciler.adjust_query("prod", 'rate(x{env="prod"}[30s])')
"""

from __future__ import annotations

import logging
import re
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import timedelta

from capacity_collector.config import CollectionSettings
from capacity_collector.filters.registry import NO_SPLIT
from capacity_collector.models import ClusterExporterInfo, ClusterResultMap
from capacity_collector.query.embedding import LABEL_NAMES_PLACEHOLDER

logger = logging.getLogger(__name__)

UP_METRIC = "up"
JOB_LABEL = "job"

# (function, prefix that marks an occurrence to skip)
_RANGE_FUNCTIONS: tuple[tuple[str, str], ...] = (
    ("rate", "i"),
    ("increase", ""),
    ("changes", ""),
)

_DURATION_RE = re.compile(
    r"^(?:(\d+)y)?(?:(\d+)w)?(?:(\d+)d)?(?:(\d+)h)?(?:(\d+)m)?(?:(\d+)s)?(?:(\d+)ms)?$"
)
_DURATION_UNITS_MS = (
    365 * 24 * 3600 * 1000,
    7 * 24 * 3600 * 1000,
    24 * 3600 * 1000,
    3600 * 1000,
    60 * 1000,
    1000,
    1,
)
_SELECTOR_RE = re.compile(r"\{[^}]*\}")
_IDENTIFIER_RE = re.compile(r"[a-zA-Z_:][a-zA-Z0-9_:]*")


class DurationError(ValueError):
    """Raised for a window that is not a Prometheus duration literal."""


def parse_duration(s: str) -> timedelta:
    """Parse a Prometheus duration such as ``5m`` or ``1h30m``."""
    m = _DURATION_RE.match(s.strip())
    if not s.strip() or m is None or not any(m.groups()):
        raise DurationError(f"not a valid duration string: {s!r}")
    ms = sum(int(g) * unit for g, unit in zip(m.groups(), _DURATION_UNITS_MS, strict=True) if g)
    return timedelta(milliseconds=ms)


def format_duration(d: timedelta) -> str:
    """Render *d* the way Prometheus prints durations (``90s`` -> ``1m30s``)."""
    ms = int(d.total_seconds() * 1000)
    if ms <= 0:
        return "0s"
    out = []
    for name, mult, exact in (
        ("y", _DURATION_UNITS_MS[0], False),
        ("w", _DURATION_UNITS_MS[1], True),
        ("d", _DURATION_UNITS_MS[2], False),
        ("h", _DURATION_UNITS_MS[3], False),
        ("m", _DURATION_UNITS_MS[4], False),
        ("s", _DURATION_UNITS_MS[5], False),
        ("ms", 1, False),
    ):
        if exact and ms % mult != 0:
            continue
        if (v := ms // mult) > 0:
            out.append(f"{v}{name}")
            ms -= v * mult
    return "".join(out)


@dataclass(frozen=True)
class Exporter:
    """A metrics exporter recognised by its metric-name prefix."""

    name: str
    metric_prefix: str
    representative_metric: str

    @property
    def query_prefix(self) -> str:
        return self.metric_prefix + "_"


KUBE_STATE_METRICS = Exporter("kube-state-metrics", "kube", "kube_node_info")
NODE_EXPORTER = Exporter("node-exporter", "node", "node_boot_time_seconds")
CADVISOR = Exporter("cadvisor", "container", "container_cpu_usage_seconds_total")
DCGM_EXPORTER = Exporter("dcgm-exporter", "DCGM", "DCGM_FI_DEV_GPU_UTIL")

KNOWN_EXPORTERS: tuple[Exporter, ...] = (
    KUBE_STATE_METRICS,
    NODE_EXPORTER,
    CADVISOR,
    DCGM_EXPORTER,
)


def exporter_prefix(metric_name: str) -> str:
    """Metric name up to its first underscore."""
    return metric_name.split("_", 1)[0]


def probe_query(metric: str, lookback: timedelta) -> str:
    return (
        f"max(count_over_time({metric}{{}}[{format_duration(lookback)}])) "
        f"by ({JOB_LABEL},{LABEL_NAMES_PLACEHOLDER})"
    )


def estimate_interval(lookback: timedelta, count: float) -> timedelta:
    """``round(lookback / count)`` to the nearest second; zero if no samples."""
    if count <= 0:
        return timedelta(0)
    return timedelta(seconds=round(lookback.total_seconds() / count))


def _matching_paren(query: str, open_idx: int) -> int:
    depth = 0
    for i in range(open_idx, len(query)):
        if query[i] == "(":
            depth += 1
        elif query[i] == ")":
            depth -= 1
            if depth == 0:
                return i
    return len(query)


def _metric_name(call_body: str) -> str:
    names = _IDENTIFIER_RE.findall(_SELECTOR_RE.sub("", call_body))
    return names[-1] if names else ""


def _adjusted_window(content: str, interval: timedelta) -> str | None:
    if content.startswith("*"):
        try:
            multiplier = int(content[1:])
        except ValueError:
            return None
        if multiplier < 1:
            return None
        return format_duration(interval * multiplier)
    try:
        return format_duration(parse_duration(content) + interval)
    except DurationError:
        return None


Prober = Callable[[str], ClusterResultMap]


class ScrapeIntervalReconciler:
    """Per-cluster scrape interval tables and the query rewrite that uses them.

    Discovery runs at most once, lazily, under a lock; adjustment waits for
    it, so no reader ever sees a half-filled table.
    """

    def __init__(
        self,
        collection: CollectionSettings,
        prober: Prober | None = None,
        exporters: Iterable[Exporter] = KNOWN_EXPORTERS,
    ) -> None:
        self._collection = collection
        self._prober = prober
        self._exporters = {e.metric_prefix: e for e in exporters}
        self._lock = threading.Lock()
        self._discovered = False
        self._exporter_info: dict[str, dict[str, ClusterExporterInfo]] = {}
        self._up_intervals: dict[str, dict[str, timedelta]] = {}

    @property
    def discovered(self) -> bool:
        return self._discovered

    def set_prober(self, prober: Prober) -> None:
        self._prober = prober

    def ensure_discovered(self) -> None:
        if self._discovered:
            return
        with self._lock:
            if self._discovered:
                return
            self._discover()
            self._discovered = True

    def _discover(self) -> None:
        if self._prober is None:
            raise RuntimeError("scrape interval discovery needs a prober")
        lookback = self._collection.scrape_lookback

        for cluster, per_job in self._probe(probe_query(UP_METRIC, lookback), lookback).items():
            self._up_intervals[cluster] = per_job

        for exporter in self._exporters.values():
            results = self._probe(probe_query(exporter.representative_metric, lookback), lookback)
            for cluster, per_job in results.items():
                job, actual = min(per_job.items(), key=lambda kv: kv[1])
                up = self._up_intervals.get(cluster, {}).get(job) or self.cluster_up_interval(cluster)
                self._exporter_info.setdefault(cluster, {})[exporter.metric_prefix] = ClusterExporterInfo(
                    exporter_name=exporter.name,
                    metric_prefix=exporter.metric_prefix,
                    prom_job_name=job,
                    actual_scrape_interval=actual,
                    up_scrape_interval=up,
                )
                logger.info(
                    "cluster=%s exporter=%s job=%s scrape interval %s (up: %s)",
                    cluster, exporter.name, job, format_duration(actual), format_duration(up),
                )

    def _probe(self, query: str, lookback: timedelta) -> dict[str, dict[str, timedelta]]:
        """Run a probe and return cluster -> job -> estimated interval."""
        intervals: dict[str, dict[str, timedelta]] = {}
        for cluster, result in self._prober(query).items():
            if not result.has_data:
                logger.debug("cluster=%s query=%s no probe data: %s", cluster, query, result.error)
                continue
            per_job: dict[str, timedelta] = {}
            for ss in result.matrix:
                interval = estimate_interval(lookback, ss.last_value())
                if interval > timedelta(0):
                    per_job[ss.labels.get(JOB_LABEL, "")] = interval
            if per_job:
                intervals[cluster] = per_job
        return intervals

    def exporter_info(self, cluster: str) -> dict[str, ClusterExporterInfo]:
        self.ensure_discovered()
        return dict(self._exporter_info.get(cluster, {}))

    def cluster_up_interval(self, cluster: str) -> timedelta:
        """Smallest ``up``-based estimate for the cluster, zero if unknown."""
        per_job = self._up_intervals.get(cluster)
        return min(per_job.values()) if per_job else timedelta(0)

    def scrape_interval(self, cluster: str, metric_prefix: str) -> timedelta:
        """Best available interval for series of *metric_prefix* in *cluster*.

        Exporter estimate, then its ``up`` estimate, then the cluster-wide
        ``up`` estimate, then the configured default.
        """
        self.ensure_discovered()
        info = self._exporter_info.get(cluster, {}).get(metric_prefix)
        if info is not None and info.scrape_interval > timedelta(0):
            return info.scrape_interval
        if (up := self.cluster_up_interval(cluster)) > timedelta(0):
            return up
        return self._collection.default_scrape_interval

    def adjust_query(self, cluster: str, query: str) -> tuple[str, timedelta | None]:
        """Widen the range-vector windows of *query* for *cluster*.

        Returns the rewritten query and the smallest scrape interval used,
        or ``None`` if nothing was adjusted. Queries not bound to a single
        cluster are returned unchanged.
        """
        if cluster == NO_SPLIT:
            return query, None
        min_interval: timedelta | None = None
        for func, ignore in _RANGE_FUNCTIONS:
            query, interval = self._adjust_function(cluster, query, func, ignore)
            if interval is not None and (min_interval is None or interval < min_interval):
                min_interval = interval
        return query, min_interval

    def _adjust_function(
        self, cluster: str, query: str, func: str, ignore: str,
    ) -> tuple[str, timedelta | None]:
        token = func + "("
        edits: list[tuple[int, int, str]] = []
        min_interval: timedelta | None = None

        pos = query.find(token)
        while pos != -1:
            if ignore and query[max(0, pos - len(ignore)):pos] == ignore:
                pos = query.find(token, pos + len(token))
                continue
            open_idx = pos + len(token) - 1
            close_idx = _matching_paren(query, open_idx)
            w_start = query.find("[", open_idx, close_idx)
            w_end = query.find("]", w_start, close_idx) if w_start != -1 else -1
            if w_end != -1:
                metric = _metric_name(query[open_idx + 1:w_start])
                interval = self.scrape_interval(cluster, exporter_prefix(metric))
                window = _adjusted_window(query[w_start + 1:w_end], interval)
                if window is None:
                    logger.debug("cluster=%s cannot adjust window in %s", cluster, query)
                else:
                    edits.append((w_start + 1, w_end, window))
                    if min_interval is None or interval < min_interval:
                        min_interval = interval
            pos = query.find(token, pos + len(token))

        for start, end, window in reversed(edits):
            query = query[:start] + window + query[end:]
        return query, min_interval
