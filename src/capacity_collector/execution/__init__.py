"""Query execution and result merging across clusters."""

from capacity_collector.execution.merge import MergeConflictError, merge
from capacity_collector.execution.pipeline import (
    Collection,
    ConnectivityLatch,
    FatalConnectivityError,
    QueryExecutor,
)

__all__ = [
    "Collection",
    "ConnectivityLatch",
    "FatalConnectivityError",
    "MergeConflictError",
    "QueryExecutor",
    "merge",
]
