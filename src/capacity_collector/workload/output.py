"""CSV output layout and formatting helpers.

Files live at ``<output_dir>/<cluster>/<entity_kind>/<file_name>.csv``. Each
entity kind has a fixed header; its last column is a ``%s`` placeholder
filled with the metric's display name when the file is created.
"""

from __future__ import annotations

import math
import re
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

FILE_EXT = ".csv"
UNKNOWN_VALUE = -1

CLUSTER_ENTITY_KIND = "cluster"
NODE_ENTITY_KIND = "node"
NODE_GROUP_ENTITY_KIND = "node_group"
CONTAINER_ENTITY_KIND = "container"
HPA_ENTITY_KIND = "container_hpa"
RQ_ENTITY_KIND = "rq"
CRQ_ENTITY_KIND = "crq"

ENTITY_KINDS = (
    CLUSTER_ENTITY_KIND,
    NODE_ENTITY_KIND,
    NODE_GROUP_ENTITY_KIND,
    CONTAINER_ENTITY_KIND,
    HPA_ENTITY_KIND,
    RQ_ENTITY_KIND,
    CRQ_ENTITY_KIND,
)

METRIC_SUBJECT = "metric"
EVENT_SUBJECT = "event"

_WORD_BOUNDARY = re.compile(r"[\s_\-]+|(?<=[a-z0-9])(?=[A-Z])")


def _words(*elements: str) -> list[str]:
    return [w for e in elements for w in _WORD_BOUNDARY.split(e) if w]


def snake_case(*elements: str) -> str:
    """``snake_case("Cpu", "utilization")`` -> ``cpu_utilization``."""
    return "_".join(w.lower() for w in _words(*elements))


def camel_case(*elements: str) -> str:
    """``camel_case("cpu", "utilization")`` -> ``CpuUtilization``."""
    return "".join(w[:1].upper() + w[1:].lower() for w in _words(*elements))


def singular(name: str) -> str:
    return name.removesuffix("s")


def file_path(output_dir: str | Path, cluster: str, entity_kind: str, file_name: str) -> Path:
    return Path(output_dir) / cluster / entity_kind / f"{file_name}{FILE_EXT}"


def make_dirs(output_dir: str | Path, clusters: Iterable[str], entity_kinds: Iterable[str] = ENTITY_KINDS) -> None:
    """Create the per-cluster entity directories."""
    kinds = list(entity_kinds)
    for cluster in clusters:
        for kind in kinds:
            (Path(output_dir) / cluster / kind).mkdir(parents=True, exist_ok=True)


def format_time(timestamp: float | datetime) -> str:
    """ISO-8601 in UTC with a ``Z`` suffix."""
    if not isinstance(timestamp, datetime):
        timestamp = datetime.fromtimestamp(timestamp, tz=UTC)
    return timestamp.astimezone(UTC).isoformat().replace("+00:00", "Z")


def format_value(value: float) -> str:
    return f"{value:f}"


def format_number(value: float | int | None) -> str:
    """Render a number for a CSV field; unknown (``-1``/``None``/NaN) is empty."""
    if value is None or value == UNKNOWN_VALUE:
        return ""
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            return ""
        return format_value(value)
    return str(value)


def replace_semicolons(s: str) -> str:
    return s.replace(";", ".")


# --- Headers ---


@dataclass(frozen=True)
class HeaderBuilder:
    """Column layout of one entity kind's workload files."""

    entity_kind_name: str
    include_cluster_name: bool = False
    include_namespace: bool = False

    def header_format(self, subject: str) -> str:
        columns = []
        if self.include_cluster_name:
            columns.append(camel_case(CLUSTER_ENTITY_KIND, "name"))
        if self.include_namespace:
            columns.append(camel_case("namespace"))
        columns += [self.entity_kind_name, camel_case(subject, "time"), "%s\n"]
        return ",".join(columns)


_CONTAINER_ENTITY_NAME = ",".join(
    (camel_case("entity", "name"), camel_case("entity", "type"), camel_case(CONTAINER_ENTITY_KIND, "name"))
)

HEADER_BUILDERS: dict[str, HeaderBuilder] = {
    CLUSTER_ENTITY_KIND: HeaderBuilder(camel_case("name")),
    NODE_ENTITY_KIND: HeaderBuilder(camel_case(NODE_ENTITY_KIND, "name"), include_cluster_name=True),
    NODE_GROUP_ENTITY_KIND: HeaderBuilder(camel_case(NODE_GROUP_ENTITY_KIND, "name"), include_cluster_name=True),
    RQ_ENTITY_KIND: HeaderBuilder(
        camel_case(RQ_ENTITY_KIND, "name"), include_cluster_name=True, include_namespace=True,
    ),
    CRQ_ENTITY_KIND: HeaderBuilder(camel_case(CRQ_ENTITY_KIND, "name"), include_cluster_name=True),
    CONTAINER_ENTITY_KIND: HeaderBuilder(_CONTAINER_ENTITY_NAME, include_cluster_name=True, include_namespace=True),
    HPA_ENTITY_KIND: HeaderBuilder(
        _CONTAINER_ENTITY_NAME + "," + camel_case("hpa", "name"),
        include_cluster_name=True,
        include_namespace=True,
    ),
}


def csv_header_format(entity_kind: str, subject: str = METRIC_SUBJECT) -> str | None:
    """Header format for *entity_kind*, or ``None`` if the kind is unknown."""
    builder = HEADER_BUILDERS.get(entity_kind.lower())
    if builder is None:
        return None
    return builder.header_format(subject)
