"""Cluster label filter registry.

Every declared cluster is identified by a label set. Clusters whose label
sets use the same label *names* share a group (keyed by a fingerprint of the
sorted names), so one templated query can serve all of them. All validation
happens at registration time, before any network call.
"""

from __future__ import annotations

import hashlib
from collections.abc import Iterable, Mapping
from dataclasses import dataclass

from capacity_collector.models import ClusterFilterSpec, Result
from capacity_collector.query.embedding import materialize

EXACT_MATCH = "="
REGEX_MATCH = "=~"
NO_SPLIT = ""
"""Result key meaning "shared query, split the result per cluster"."""


class FilterError(Exception):
    """Raised when a cluster filter is invalid or not distinct."""


@dataclass(frozen=True)
class LabelFilter:
    """Selector fragments derived from one or more identifier label sets."""

    label_names: str = ""
    labels: str = ""


def compute_filter(*label_sets: Mapping[str, str]) -> LabelFilter:
    """Build the selector for label sets that share the same label names.

    A single set produces exact matches (``env="prod"``); several sets
    produce a regex alternation (``env=~"prod|staging"``). Label names are
    sorted for determinism.
    """
    if not label_sets:
        return LabelFilter()
    op = EXACT_MATCH if len(label_sets) == 1 else REGEX_MATCH
    names = sorted(label_sets[0])
    clauses = []
    for name in names:
        values = "|".join(ls[name] for ls in label_sets)
        clauses.append(f'{name}{op}"{values}"')
    return LabelFilter(label_names=",".join(names), labels=",".join(clauses))


def fingerprint(label_names: Iterable[str]) -> str:
    """Deterministic hash of a label-name set (order independent)."""
    joined = "\xff".join(sorted(set(label_names)))
    return hashlib.sha256(joined.encode("utf-8")).hexdigest()[:16]


def contains(mapping: Mapping[str, str], key: str, value: str) -> bool:
    return key in mapping and mapping[key] == value


def is_subset(superset: Mapping[str, str], candidate: Mapping[str, str]) -> bool:
    """True if every pair of *candidate* is present in *superset*.

    An empty candidate is a subset of everything.
    """
    if len(candidate) > len(superset):
        return False
    return all(contains(superset, k, v) for k, v in candidate.items())


class ClusterFilter:
    """A registered cluster and its own (single label set) filter."""

    def __init__(self, spec: ClusterFilterSpec) -> None:
        self.spec = spec
        self.filter = compute_filter(spec.identifiers) if spec.identifiers else LabelFilter()

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def identifiers(self) -> dict[str, str]:
        return self.spec.identifiers

    def validate_distinct(self, other: ClusterFilter) -> None:
        """Raise FilterError if *other* cannot be told apart from this filter."""
        if not self.identifiers or not other.identifiers:
            raise FilterError("a cluster filter with no identifiers is not distinct")
        if self.name == other.name:
            raise FilterError(f"cluster filter with name {self.name} already configured")
        for ln, lv in other.identifiers.items():
            if contains(self.identifiers, ln, lv):
                raise FilterError(
                    f"cluster filter with name {self.name} already contains label {ln} = {lv}"
                )


class QueryLabelFilterGroup:
    """Clusters sharing the same identifier label names."""

    def __init__(self, label_names: Iterable[str]) -> None:
        self.label_names = tuple(sorted(label_names))
        self.fingerprint = fingerprint(self.label_names)
        self.cluster_filters: list[ClusterFilter] = []
        self.filter = LabelFilter()

    @property
    def cluster_names(self) -> list[str]:
        return [cf.name for cf in self.cluster_filters]

    def add(self, cf: ClusterFilter) -> None:
        self.cluster_filters.append(cf)
        self.filter = compute_filter(*(c.identifiers for c in self.cluster_filters if c.identifiers))

    def materialize(self, template: str, per_cluster: bool = True) -> dict[str, str]:
        """Resolve the placeholders of an embedded template.

        Returns one query per cluster, or a single shared query under the
        ``NO_SPLIT`` key when *per_cluster* is off.
        """
        if per_cluster:
            return {cf.name: materialize(template, cf.filter) for cf in self.cluster_filters}
        return {NO_SPLIT: materialize(template, self.filter)}

    def split(self, result: Result, cluster: str) -> dict[str, Result]:
        """Map a result back to clusters.

        Results of a shared query are split by matching each series against
        the member identifiers; per-cluster results pass through.
        """
        if cluster != NO_SPLIT:
            return {cluster: result}
        split: dict[str, Result] = {}
        for cf in self.cluster_filters:
            matrix = [ss for ss in result.matrix if is_subset(ss.labels, cf.identifiers)]
            split[cf.name] = Result(query=result.query, matrix=matrix, error=result.error)
        return split


class LabelFilterRegistry:
    """In-memory registry of cluster filters and their label-name groups.

    Groups keep registration order, which is also the query order.
    """

    def __init__(self) -> None:
        self._filters: dict[str, ClusterFilter] = {}
        self._groups: dict[str, QueryLabelFilterGroup] = {}

    def __len__(self) -> int:
        return len(self._filters)

    @property
    def cluster_names(self) -> list[str]:
        return list(self._filters)

    @property
    def groups(self) -> list[QueryLabelFilterGroup]:
        return list(self._groups.values())

    def get(self, name: str) -> ClusterFilter | None:
        return self._filters.get(name)

    def register(self, spec: ClusterFilterSpec) -> ClusterFilter:
        """Validate and register a single cluster filter.

        Raises FilterError on an empty name, a duplicate name, an identifier
        pair shared with another cluster, or a catch-all filter coexisting
        with any other filter.
        """
        if not spec.name:
            raise FilterError("cluster filter with no name")
        cf = ClusterFilter(spec)
        for existing in self._filters.values():
            existing.validate_distinct(cf)

        self._filters[cf.name] = cf
        fp = fingerprint(cf.identifiers)
        group = self._groups.get(fp)
        if group is None:
            group = QueryLabelFilterGroup(cf.identifiers)
            self._groups[fp] = group
        group.add(cf)
        return cf

    def register_all(self, specs: Iterable[ClusterFilterSpec]) -> None:
        for spec in specs:
            self.register(spec)
