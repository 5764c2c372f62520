"""Per-cluster logging on top of the standard ``logging`` package.

Records tagged with a cluster (via :func:`cluster_logger`) go to that
cluster's ``log.txt``; untagged records go to every cluster's log. The
console gets everything once.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from pathlib import Path

CLUSTER_FORMAT = "cluster=%s"
QUERY_FORMAT = "metric=%s query=%s"
CLUSTER_QUERY_FORMAT = CLUSTER_FORMAT + " query=%s"
CLUSTER_FILE_FORMAT = CLUSTER_FORMAT + " file=%s"
CLUSTER_ENTITY_FORMAT = CLUSTER_FORMAT + " entity=%s"

LOG_FILENAME = "log.txt"
_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def cluster_logger(logger: logging.Logger, cluster: str) -> logging.LoggerAdapter:
    """Return an adapter that tags every record with *cluster*."""
    return logging.LoggerAdapter(logger, {"cluster": cluster})


class ClusterFilter(logging.Filter):
    """Pass records tagged with our cluster, or with no cluster at all."""

    def __init__(self, cluster: str) -> None:
        super().__init__()
        self._cluster = cluster

    def filter(self, record: logging.LogRecord) -> bool:
        tagged = getattr(record, "cluster", None)
        return not tagged or tagged == self._cluster


def configure_logging(
    output_dir: str | Path | None = None,
    clusters: Iterable[str] = (),
    debug: bool = False,
) -> None:
    """Set up the console handler and one file handler per cluster.

    Cluster directories are created if missing. Safe to call more than once;
    handlers installed by a previous call are replaced.
    """
    root = logging.getLogger("capacity_collector")
    root.setLevel(logging.DEBUG if debug else logging.INFO)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(_FORMAT)
    console = logging.StreamHandler()
    console.setFormatter(formatter)
    root.addHandler(console)

    if output_dir is None:
        return
    for cluster in clusters:
        cluster_dir = Path(output_dir) / cluster
        cluster_dir.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(cluster_dir / LOG_FILENAME, encoding="utf-8")
        fh.setFormatter(formatter)
        fh.addFilter(ClusterFilter(cluster))
        root.addHandler(fh)
