"""capacity-collector: multi-cluster Prometheus query templating and workload extraction."""

__version__ = "0.1.0"

from capacity_collector.config import CollectorConfig, ConfigError, find_config, load_config
from capacity_collector.execution.merge import MergeConflictError, merge
from capacity_collector.execution.pipeline import (
    Collection,
    FatalConnectivityError,
    QueryExecutor,
)
from capacity_collector.filters.registry import FilterError, LabelFilterRegistry
from capacity_collector.models import (
    ClusterExporterInfo,
    ClusterFilterSpec,
    ClusterResultMap,
    MergePolicy,
    QueryRange,
    Result,
    Sample,
    SampleStream,
    TimeAndValues,
)
from capacity_collector.query.embedding import EmbeddingError
from capacity_collector.session import CollectorSession
from capacity_collector.workload.writer import QueryProcessor, WorkloadMetricHolder, WorkloadWriter

__all__ = [
    "ClusterExporterInfo",
    "ClusterFilterSpec",
    "ClusterResultMap",
    "Collection",
    "CollectorConfig",
    "CollectorSession",
    "ConfigError",
    "EmbeddingError",
    "FatalConnectivityError",
    "FilterError",
    "find_config",
    "LabelFilterRegistry",
    "load_config",
    "merge",
    "MergeConflictError",
    "MergePolicy",
    "QueryExecutor",
    "QueryProcessor",
    "QueryRange",
    "Result",
    "Sample",
    "SampleStream",
    "TimeAndValues",
    "WorkloadMetricHolder",
    "WorkloadWriter",
    "__version__",
]
