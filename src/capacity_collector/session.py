"""Collector session: the shared state of one collection run.

Everything that would otherwise be a process-wide global (cluster filters,
embedder cache, platform classification, scrape-interval tables, the
connectivity latch, query exclusions) lives here and is handed to the
components that need it.
"""

from __future__ import annotations

import logging
from datetime import datetime

from capacity_collector.config import CollectorConfig
from capacity_collector.execution.pipeline import (
    ConnectivityLatch,
    ExclusionPredicate,
    QueryExecutor,
)
from capacity_collector.filters.registry import LabelFilterRegistry
from capacity_collector.models import ClusterFilterSpec
from capacity_collector.platforms.adapter import PlatformAdapter
from capacity_collector.prometheus.client import PrometheusClient
from capacity_collector.query.embedding import EmbedderCache
from capacity_collector.query.scrape import ScrapeIntervalReconciler

logger = logging.getLogger(__name__)

DEFAULT_CLUSTER = "default"


class CollectorSession:
    """Owns the registries and caches used while collecting.

    Cluster filters are validated on construction, before any network call.
    With no clusters configured, a single catch-all cluster named
    ``default`` is registered.
    """

    def __init__(
        self,
        config: CollectorConfig,
        client: PrometheusClient | None = None,
        now: datetime | None = None,
    ) -> None:
        self.config = config
        self.collection = config.collection

        self.registry = LabelFilterRegistry()
        self.registry.register_all(config.clusters or [ClusterFilterSpec(name=DEFAULT_CLUSTER)])

        self.embedders = EmbedderCache()
        self.platform = PlatformAdapter.from_settings(config.prometheus)
        self.client = client if client is not None else PrometheusClient(config.prometheus)
        self.latch = ConnectivityLatch(config.prometheus.connectivity_log_level)
        self.exclusions: list[ExclusionPredicate] = []
        self.current_time = config.collection.current_time(now)

        self.executor = QueryExecutor(self)
        self.scrape = ScrapeIntervalReconciler(config.collection, prober=self.executor.probe)
        logger.debug(
            "session: %d cluster(s) in %d group(s), current time %s",
            len(self.registry), len(self.registry.groups), self.current_time.isoformat(),
        )

    @classmethod
    def from_config(
        cls,
        config: CollectorConfig,
        client: PrometheusClient | None = None,
        now: datetime | None = None,
    ) -> CollectorSession:
        return cls(config, client=client, now=now)

    @property
    def cluster_names(self) -> list[str]:
        return self.registry.cluster_names
