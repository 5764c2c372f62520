"""Query execution across all registered clusters.

One logical query goes through: embed the template once; materialize it per
label-filter group (per cluster, or shared); skip excluded cluster/query
pairs; widen range windows to the cluster's scrape interval; adapt to the
observability platform; execute under a hard ceiling; split a shared result
back per cluster; merge everything into one ``ClusterResultMap``.

Execution is serial. Nothing is retried: a failed or empty result is recorded
on that cluster's ``Result`` and the loop moves on.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from capacity_collector.execution.merge import MergeConflictError, merge
from capacity_collector.filters.registry import NO_SPLIT
from capacity_collector.log import CLUSTER_QUERY_FORMAT, cluster_logger
from capacity_collector.models import (
    ClusterResultMap,
    Matrix,
    MergePolicy,
    QueryRange,
    Result,
)
from capacity_collector.platforms.adapter import BUILD_INFO_PLACEHOLDER
from capacity_collector.prometheus.client import (
    PrometheusConnectionError,
    PrometheusError,
    decode_exemplars,
    decode_matrix,
)

if TYPE_CHECKING:
    from datetime import timedelta

    from capacity_collector.session import CollectorSession

logger = logging.getLogger(__name__)

UP_QUERY = "up{} == 1"

ClusterMatrixFunc = Callable[[str, Matrix], None]
ExclusionPredicate = Callable[[str, str], bool]


class FatalConnectivityError(Exception):
    """The first connectivity error of the process: treated as misconfiguration."""


class NoDataError(Exception):
    """A query succeeded but returned no series for a cluster."""


class ConnectivityLatch:
    """Once-only guard deciding whether a connectivity error is fatal.

    The first error reported trips the latch and raises
    :class:`FatalConnectivityError`; later ones are only logged at *level*.
    Thread-safe via a lock.
    """

    def __init__(self, level: int = logging.WARNING) -> None:
        self._lock = threading.Lock()
        self._tripped = False
        self.level = level

    @property
    def tripped(self) -> bool:
        return self._tripped

    def report(self, error: Exception, log: logging.Logger | logging.LoggerAdapter = logger) -> None:
        with self._lock:
            first = not self._tripped
            self._tripped = True
        if first:
            log.critical("cannot connect to Prometheus, check the configuration: %s", error)
            raise FatalConnectivityError(str(error)) from error
        log.log(self.level, "connectivity error: %s", error)


@dataclass
class Collection:
    """Outcome of one logical query."""

    results: ClusterResultMap = field(default_factory=dict)
    found: int = 0
    """Number of clusters whose matrix is non-empty."""

    error: Exception | None = None
    """Merge conflict that stopped the loop; results hold what came before it."""


class QueryExecutor:
    """Runs templated queries for every cluster of a :class:`CollectorSession`."""

    def __init__(self, session: CollectorSession) -> None:
        self._session = session
        self._metric_presence: dict[str, set[str]] = {}

    # --- Exclusions ---

    def register_exclusion(self, predicate: ExclusionPredicate) -> None:
        """Skip a (cluster, query) pair whenever *predicate* returns True."""
        self._session.exclusions.append(predicate)

    def _excluded(self, cluster: str, query: str) -> bool:
        return any(p(cluster, query) for p in self._session.exclusions)

    # --- Collection ---

    def collect(self, template: str, query_range: QueryRange, *, adjust: bool = True) -> Collection:
        """Execute *template* for all clusters.

        Raises:
            EmbeddingError: If the template shape is malformed.
            FatalConnectivityError: On the first connectivity error of the process.
        """
        s = self._session
        embedded = s.embedders.embed(template)
        results: ClusterResultMap = {}
        error: Exception | None = None

        for group in s.registry.groups:
            queries = group.materialize(embedded, s.collection.query_per_cluster)
            for cluster, query in queries.items():
                log = cluster_logger(logger, cluster) if cluster != NO_SPLIT else logger
                if cluster != NO_SPLIT and self._excluded(cluster, query):
                    log.debug(CLUSTER_QUERY_FORMAT + " excluded", cluster, query)
                    continue
                result = self._execute(cluster, query, query_range, adjust)
                split = group.split(result, cluster)
                for r in split.values():
                    if r.error is None and not r.matrix:
                        r.error = NoDataError("no data returned")
                try:
                    results = merge(results, split, MergePolicy.FAIL)
                except MergeConflictError as e:
                    error = e
                    break
            if error is not None:
                break

        found = sum(1 for r in results.values() if r.has_data)
        return Collection(results=results, found=found, error=error)

    def _execute(self, cluster: str, query: str, query_range: QueryRange, adjust: bool) -> Result:
        s = self._session
        log = cluster_logger(logger, cluster) if cluster != NO_SPLIT else logger
        step = query_range.step
        if adjust:
            query, min_interval = s.scrape.adjust_query(cluster, query)
            if step is None:
                step = min_interval
        query = s.platform.adapt(query)
        log.debug(CLUSTER_QUERY_FORMAT, cluster, query)

        try:
            matrix = self._call(query, query_range, step)
        except PrometheusConnectionError as e:
            s.latch.report(e, log)
            return Result(query=query, error=e)
        except PrometheusError as e:
            return Result(query=query, error=e)
        return Result(query=query, matrix=matrix)

    def _call(self, query: str, query_range: QueryRange, step: timedelta | None) -> Matrix:
        client = self._session.client
        if query_range.is_instant:
            return decode_matrix(client.query(query, query_range.end))
        end = query_range.end or self._session.current_time
        if step is not None:
            return decode_matrix(client.query_range(query, query_range.start, end, step))
        return decode_exemplars(client.query_exemplars(query, query_range.start, end))

    def probe(self, query: str) -> ClusterResultMap:
        """Instant query at the current wall-clock time, without window adjustment."""
        return self.collect(query, QueryRange.instant(), adjust=False).results

    def collect_and_process(
        self,
        template: str,
        query_range: QueryRange,
        matrix_func: ClusterMatrixFunc | None,
        level: int = logging.WARNING,
    ) -> Collection:
        """Collect, then hand every successful cluster matrix to *matrix_func*.

        Failed clusters (and a merge conflict) are logged at *level*.
        """
        collection = self.collect(template, query_range)
        if collection.error is not None:
            logger.log(level, "query=%s %s", template, collection.error)
            return collection
        for cluster, result in collection.results.items():
            if result.error is None:
                if matrix_func is not None:
                    matrix_func(cluster, result.matrix)
            else:
                cluster_logger(logger, cluster).log(
                    level, CLUSTER_QUERY_FORMAT + " %s", cluster, result.query, result.error,
                )
        return collection

    # --- Found counting ---

    def evaluate(self, found: int, flag: bool) -> int:
        """Clusters with data if *flag*, clusters without data otherwise."""
        return found if flag else len(self._session.registry) - found

    def found_variants(self, found: int) -> list[bool]:
        """Which variants of a query to run next: ``[True]``, ``[False]`` or both.

        ``True`` means "the clusters that had data", ``False`` "those that
        did not" (the candidates for a legacy-metric fallback).
        """
        return [flag for flag in (True, False) if self.evaluate(found, flag) > 0]

    # --- Backend metadata ---

    def check_up(self) -> int:
        """Number of clusters with at least one healthy scrape target."""
        return self.collect(UP_QUERY, QueryRange.instant(), adjust=False).found

    def prometheus_version(self) -> str:
        """Backend version, or a placeholder where the platform has no build-info API."""
        s = self._session
        if not s.platform.supports_build_info:
            return BUILD_INFO_PLACEHOLDER
        try:
            info = s.client.build_info()
        except PrometheusConnectionError as e:
            s.latch.report(e)
            return ""
        except PrometheusError as e:
            logger.warning("cannot get Prometheus build info: %s", e)
            return ""
        return str(info.get("version", ""))

    def resolve_metrics(self, names: Iterable[str]) -> None:
        """Record, per cluster, which of *names* currently have series."""
        for name in names:
            collection = self.collect(f"count({name}{{}})", QueryRange.instant(), adjust=False)
            for cluster, result in collection.results.items():
                if result.has_data:
                    self._metric_presence.setdefault(cluster, set()).add(name)

    def is_metric_present(self, cluster: str, name: str) -> bool:
        return name in self._metric_presence.get(cluster, set())
