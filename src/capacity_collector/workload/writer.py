"""Historical-window workload writer.

Runs one or more query variants over ``history`` windows, newest first, and
appends one CSV row per retained sample to a per-cluster file. Query latency
grows with history depth, so when old windows time out the recent data is
already on disk.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, TextIO

from capacity_collector.log import CLUSTER_FILE_FORMAT, QUERY_FORMAT, cluster_logger
from capacity_collector.models import Matrix, SampleStream
from capacity_collector.workload.output import (
    METRIC_SUBJECT,
    camel_case,
    csv_header_format,
    file_path,
    format_time,
    replace_semicolons,
    singular,
    snake_case,
)
from capacity_collector.workload.providers import HistoryRangeProvider, QueryProvider

if TYPE_CHECKING:
    from capacity_collector.session import CollectorSession

logger = logging.getLogger(__name__)

FieldsFunc = Callable[[str, list[str]], tuple[list[str], bool]]
"""``(cluster, fields) -> (fields, ok)``: rewrite a row's fields or veto it."""


@dataclass
class QueryProcessor:
    """Label fields to extract for one query variant, and an optional conversion."""

    metric_fields: Sequence[str] = ()
    convert: FieldsFunc | None = None


@dataclass
class FieldProvider:
    cluster: str
    metric_fields: Sequence[str] = ()
    convert: FieldsFunc | None = None

    def fields(self, labels: dict[str, str]) -> str | None:
        """Comma-joined field values, or ``None`` if the series is not retained."""
        values = []
        for name in self.metric_fields:
            if name not in labels:
                return None
            values.append(labels[name])
        if self.convert is not None:
            values, ok = self.convert(self.cluster, values)
            if not ok:
                return None
        return ",".join(values)


class WorkloadMetricHolder:
    """File name (snake_case) and metric name (CamelCase) of one workload metric."""

    def __init__(self, *name_elements: str) -> None:
        self.file_name = snake_case(*name_elements)
        self.metric_name = camel_case(*name_elements)

    def override_file_name(self, *name_elements: str) -> WorkloadMetricHolder:
        self.file_name = snake_case(*name_elements)
        return self

    def name(self, file: bool = False, make_singular: bool = False) -> str:
        n = self.file_name if file else self.metric_name
        return singular(n) if make_singular else n

    def __repr__(self) -> str:
        return f"WorkloadMetricHolder(file_name={self.file_name!r}, metric_name={self.metric_name!r})"


@dataclass
class _ClusterFile:
    path: Path
    handle: TextIO | None = None
    abandoned: bool = False


@dataclass
class WriteSummary:
    """What one writer call produced."""

    rows: dict[str, int] = field(default_factory=dict)
    files: dict[str, Path] = field(default_factory=dict)
    failed: list[str] = field(default_factory=list)


class WorkloadWriter:
    """Writes workload CSV files for the clusters of a session."""

    def __init__(self, session: CollectorSession, output_dir: str | Path | None = None) -> None:
        self._session = session
        self._output_dir = Path(output_dir if output_dir is not None else session.config.output_dir)

    def write(
        self,
        file_name: str,
        metric_name: str,
        query: str,
        metric_fields: Sequence[str],
        entity_kind: str,
        subject: str = METRIC_SUBJECT,
        provider: QueryProvider | None = None,
    ) -> WriteSummary:
        """Single-query form of :meth:`write_query_variants`."""
        return self.write_query_variants(
            file_name, metric_name, {query: QueryProcessor(metric_fields)}, entity_kind, subject, provider,
        )

    def write_holder(
        self,
        holder: WorkloadMetricHolder,
        processors: dict[str, QueryProcessor],
        entity_kind: str,
    ) -> WriteSummary:
        return self.write_query_variants(holder.file_name, holder.metric_name, processors, entity_kind)

    def write_query_variants(
        self,
        file_name: str,
        metric_name: str,
        processors: dict[str, QueryProcessor],
        entity_kind: str,
        subject: str = METRIC_SUBJECT,
        provider: QueryProvider | None = None,
    ) -> WriteSummary:
        """Run every query in *processors* for each historical window, newest first.

        Files are created on the first retained row for a cluster and closed
        once at the end. A file that already exists, or fails to write, is
        abandoned for that cluster; other clusters carry on.
        """
        summary = WriteSummary()
        header = csv_header_format(entity_kind, subject)
        if header is None:
            logger.error("entity=%s no CSV header format found", entity_kind)
            return summary

        s = self._session
        if provider is None:
            provider = HistoryRangeProvider(s.collection, s.current_time)
        files: dict[str, _ClusterFile] = {}
        try:
            for history_index in range(s.collection.history):
                query_range = provider.calculate_range(history_index)
                for query, processor in processors.items():
                    collection = s.executor.collect(query, query_range)
                    if collection.error is not None:
                        logger.warning(QUERY_FORMAT + " %s", metric_name, query, collection.error)
                        continue
                    for cluster, result in collection.results.items():
                        if not result.has_data:
                            continue
                        cf = files.get(cluster)
                        if cf is None:
                            cf = self._open(cluster, file_name, entity_kind, header, metric_name)
                            files[cluster] = cf
                        if cf.abandoned:
                            continue
                        fp = FieldProvider(cluster, processor.metric_fields, processor.convert)
                        try:
                            n = self._write_matrix(cf.handle, cluster, result.matrix, fp, provider)
                        except OSError as e:
                            cluster_logger(logger, cluster).error(
                                CLUSTER_FILE_FORMAT + " %s", cluster, cf.path, e,
                            )
                            self._close(cluster, cf)
                            cf.abandoned = True
                            continue
                        summary.rows[cluster] = summary.rows.get(cluster, 0) + n
        finally:
            for cluster, cf in files.items():
                self._close(cluster, cf)
                if cf.abandoned:
                    summary.failed.append(cluster)
                else:
                    summary.files[cluster] = cf.path
        return summary

    def _open(self, cluster: str, file_name: str, entity_kind: str, header: str, metric_name: str) -> _ClusterFile:
        path = file_path(self._output_dir, cluster, entity_kind, file_name)
        cf = _ClusterFile(path=path)
        log = cluster_logger(logger, cluster)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            cf.handle = path.open("x", encoding="utf-8", newline="")
            cf.handle.write(header % metric_name)
        except FileExistsError:
            log.error(CLUSTER_FILE_FORMAT + " already exists", cluster, path)
            cf.abandoned = True
        except OSError as e:
            log.error(CLUSTER_FILE_FORMAT + " %s", cluster, path, e)
            self._close(cluster, cf)
            cf.abandoned = True
        return cf

    @staticmethod
    def _close(cluster: str, cf: _ClusterFile) -> None:
        if cf.handle is None:
            return
        try:
            cf.handle.close()
        except OSError as e:
            cluster_logger(logger, cluster).error(CLUSTER_FILE_FORMAT + " %s", cluster, cf.path, e)
        cf.handle = None

    @staticmethod
    def _write_matrix(
        handle: TextIO,
        cluster: str,
        matrix: Matrix,
        fp: FieldProvider,
        provider: QueryProvider,
    ) -> int:
        rows = 0
        for ss in matrix:
            fields = fp.fields(ss.labels)
            if fields is None:
                continue
            rows += write_values(handle, cluster, fields, ss, provider)
        return rows


def write_values(
    handle: TextIO,
    cluster: str,
    fields: str,
    stream: SampleStream,
    provider: QueryProvider,
) -> int:
    """Write the finite samples of *stream*; each decoded row ``count`` times."""
    prefix = f"{cluster},{replace_semicolons(fields)}," if fields else f"{cluster},"
    rows = 0
    for sample in stream.samples:
        if not sample.is_finite:
            continue
        tv = provider.time_and_values(sample)
        line = f"{prefix}{format_time(tv.time)},{tv.values}\n"
        for _ in range(max(tv.count, 1)):
            handle.write(line)
            rows += 1
    return rows
