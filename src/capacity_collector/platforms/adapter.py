"""Managed observability platform detection and query adaptation.

Some managed Prometheus services relabel series on ingestion. Google Managed
Prometheus, for example, moves the ``namespace``/``pod`` labels written by
kube-state-metrics and dcgm-exporter to ``exported_namespace``/``exported_pod``;
the adapter copies them back with ``label_replace`` so templates written for
plain Prometheus keep working.
"""

from __future__ import annotations

import enum
import logging
import re
import threading
from collections.abc import Callable

from capacity_collector.query.labels import LabelReplaceCondition, label_replace
from capacity_collector.query.scrape import DCGM_EXPORTER, KUBE_STATE_METRICS

logger = logging.getLogger(__name__)

BUILD_INFO_PLACEHOLDER = "not detected for this platform"

AMP_HOST_PREFIX = "aps-workspaces"
AZURE_HOST_SUFFIX = "prometheus.monitor.azure.com"
GMP_HOST_PREFIX = "monitoring.googleapis.com"
GRAFANA_CLOUD_DOMAIN = "grafana.net"


class ObservabilityPlatform(enum.StrEnum):
    UNKNOWN = ""
    AWS_MANAGED_PROMETHEUS = "AWS Managed Prometheus"
    AZURE_MONITOR_MANAGED_PROMETHEUS = "Azure Monitor Managed Prometheus"
    GOOGLE_MANAGED_PROMETHEUS = "Google Managed Prometheus"
    GRAFANA_CLOUD = "Grafana Cloud"


def classify(host: str, sigv4_configured: bool = False, password_configured: bool = False) -> ObservabilityPlatform:
    """Identify the platform from the API host and the auth settings."""
    host = host.lower()
    if sigv4_configured or host.startswith(AMP_HOST_PREFIX):
        return ObservabilityPlatform.AWS_MANAGED_PROMETHEUS
    if host.endswith(AZURE_HOST_SUFFIX):
        return ObservabilityPlatform.AZURE_MONITOR_MANAGED_PROMETHEUS
    if host.startswith(GMP_HOST_PREFIX):
        return ObservabilityPlatform.GOOGLE_MANAGED_PROMETHEUS
    if GRAFANA_CLOUD_DOMAIN in host and password_configured:
        return ObservabilityPlatform.GRAFANA_CLOUD
    return ObservabilityPlatform.UNKNOWN


# --- Google Managed Prometheus ---

_RELABELED_PREFIXES = (KUBE_STATE_METRICS.query_prefix, DCGM_EXPORTER.query_prefix)
_OVER_TIME_SUFFIX = "_over_time"

# Up to three levels of nesting. Possessive quantifiers keep the match linear.
_BALANCED_PARENS = r"\((?:[^()]++|\((?:[^()]++|\([^()]*+\))*+\))*+\)"


def _build_gmp_regex() -> re.Pattern[str]:
    patterns = [rf"[a-zA-Z0-9_]+{_OVER_TIME_SUFFIX}\s*{_BALANCED_PARENS}"]
    patterns += [rf"{re.escape(p)}.+?\{{[^}}]*\}}(?:\[.+?\])?" for p in _RELABELED_PREFIXES]
    return re.compile("|".join(f"(?:{p})" for p in patterns))


_GMP_RE = _build_gmp_regex()


def _restore_exported_labels(match: re.Match[str]) -> str:
    text = match.group(0)
    if (
        text.endswith(")")
        and _OVER_TIME_SUFFIX in text
        and not any(p in text for p in _RELABELED_PREFIXES)
    ):
        return text
    for label in ("namespace", "pod"):
        text = label_replace(text, label, f"exported_{label}", LabelReplaceCondition.HAS_VALUE)
    return text


def adapt_for_gmp(query: str) -> str:
    """Wrap kube-state-metrics and DCGM selectors (or the ``*_over_time`` calls
    around them) so ``exported_namespace``/``exported_pod`` become
    ``namespace``/``pod`` again."""
    return _GMP_RE.sub(_restore_exported_labels, query)


QueryAdjuster = Callable[[str], str]

PLATFORM_QUERY_ADJUSTERS: dict[ObservabilityPlatform, QueryAdjuster] = {
    ObservabilityPlatform.GOOGLE_MANAGED_PROMETHEUS: adapt_for_gmp,
}

_NO_BUILD_INFO = frozenset({
    ObservabilityPlatform.AWS_MANAGED_PROMETHEUS,
    ObservabilityPlatform.AZURE_MONITOR_MANAGED_PROMETHEUS,
})


class PlatformAdapter:
    """Classifies the backend once and applies its query adjuster.

    Thread-safe: classification happens under a lock on first use.
    """

    def __init__(self, host: str, sigv4_configured: bool = False, password_configured: bool = False) -> None:
        self._host = host
        self._sigv4 = sigv4_configured
        self._password = password_configured
        self._lock = threading.Lock()
        self._platform: ObservabilityPlatform | None = None
        self._adjuster: QueryAdjuster | None = None

    @classmethod
    def from_settings(cls, settings) -> PlatformAdapter:
        """Build from a :class:`~capacity_collector.config.PrometheusSettings`."""
        return cls(settings.host, settings.sigv4 is not None, settings.has_password)

    @property
    def platform(self) -> ObservabilityPlatform:
        if self._platform is None:
            with self._lock:
                if self._platform is None:
                    platform = classify(self._host, self._sigv4, self._password)
                    self._adjuster = PLATFORM_QUERY_ADJUSTERS.get(platform)
                    self._platform = platform
                    if platform:
                        logger.info("observability platform: %s", platform)
        return self._platform

    def adapt(self, query: str) -> str:
        _ = self.platform
        if self._adjuster is None:
            return query
        return self._adjuster(query)

    @property
    def supports_build_info(self) -> bool:
        return self.platform not in _NO_BUILD_INFO
