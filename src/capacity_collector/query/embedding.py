"""Embed cluster label selectors into generic query templates.

This is text substitution, not parsing. A template is classified by shape
(how many ``}`` it has, or whether it has a ``)``), a marker is inserted at
the matching positions, and the marker is later replaced with a cluster's
selector clauses. Aggregator templates only get a marker where the first
``)`` closes a bare metric name. A cleanup pass removes the artifacts left
behind when the substitution is empty.

Keep callers on :func:`embed`, :func:`materialize` and :func:`clean_query`
so the heuristics can be swapped for a real query AST later.
"""

from __future__ import annotations

import enum
import threading
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from capacity_collector.filters.registry import LabelFilter

# The marker contains characters that are invalid in a label name, so it can
# never collide with template text.
LABELS_PLACEHOLDER = "#//#CLUSTER_LABELS#//#"
LABEL_NAMES_PLACEHOLDER = "LNPH"

RIGHT_BRACE = "}"
RIGHT_PAREN = ")"

_CLEANUP: list[tuple[str, str]] = [
    (",,", ","),
    ("{,", "{"),
    (",}", "}"),
    ("(,", "("),
    (",)", ")"),
    (" by ()", ""),
    ("{}", ""),
]


class EmbeddingError(Exception):
    """Raised when a template does not have the shape its embedder expects."""


class QueryShape(enum.Enum):
    PLAIN = "plain"
    AGGREGATOR = "aggregator"
    LABELED = "labeled"


def classify(template: str) -> tuple[QueryShape, int]:
    """Guess the template shape and how many selector blocks it has."""
    if (k := template.count(RIGHT_BRACE)) > 0:
        return QueryShape.LABELED, k
    if RIGHT_PAREN in template:
        return QueryShape.AGGREGATOR, 1
    return QueryShape.PLAIN, 0


class Embedder(Protocol):
    def embed(self, template: str) -> str: ...


class PlainEmbedder:
    """No selector at all: append a synthetic one."""

    def embed(self, template: str) -> str:
        return template + "{" + LABELS_PLACEHOLDER + "}"


class DelimiterEmbedder:
    """Insert *marker* right before each of the first *count* *delimiter* occurrences."""

    def __init__(self, delimiter: str, count: int, marker: str) -> None:
        if count < 1:
            raise ValueError("DelimiterEmbedder needs at least one occurrence")
        self.delimiter = delimiter
        self.count = count
        self.marker = marker

    def embed(self, template: str) -> str:
        parts = template.split(self.delimiter)
        found = len(parts) - 1
        if found < self.count:
            raise EmbeddingError(
                f"requested {self.count} occurrence(s) of {self.delimiter!r} "
                f"but only {found} found in query {template}"
            )
        for i in range(self.count):
            parts[i] += self.marker
        return self.delimiter.join(parts)


_GROUPING_KEYWORDS = ("by", "without", "on", "ignoring", "group_left", "group_right")


def _is_name_char(c: str) -> bool:
    return c.isalnum() or c in "_:"


class AggregatorEmbedder:
    """Append a selector to the metric name that ends right before the first ``)``.

    Only done where a selector is legal: the ``)`` must follow a bare metric
    name, not a range window (``]``), an empty call (``()``) or a grouping
    label list. Any other template is returned unchanged.
    """

    def __init__(self, marker: str) -> None:
        self.marker = marker

    def embed(self, template: str) -> str:
        close = template.find(RIGHT_PAREN)
        if close == -1:
            return template
        end = close
        while end > 0 and template[end - 1] == " ":
            end -= 1
        start = end
        while start > 0 and _is_name_char(template[start - 1]):
            start -= 1
        name = template[start:end]
        if not name or name[0].isdigit():
            return template
        before = template[:start].rstrip()
        if not before.endswith("("):
            return template
        caller = before[:-1].rstrip()
        i = len(caller)
        while i > 0 and _is_name_char(caller[i - 1]):
            i -= 1
        if caller[i:] in _GROUPING_KEYWORDS:
            return template
        return template[:end] + self.marker + template[end:]


def _build_embedder(shape: QueryShape, count: int) -> Embedder:
    match shape:
        case QueryShape.PLAIN:
            return PlainEmbedder()
        case QueryShape.AGGREGATOR:
            return AggregatorEmbedder("{" + LABELS_PLACEHOLDER + "}")
        case QueryShape.LABELED:
            return DelimiterEmbedder(RIGHT_BRACE, count, "," + LABELS_PLACEHOLDER)


class EmbedderCache:
    """Embedders memoized by (shape, occurrence count).

    Thread-safe via a single lock.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._embedders: dict[tuple[QueryShape, int], Embedder] = {}

    def __len__(self) -> int:
        return len(self._embedders)

    def get(self, shape: QueryShape, count: int) -> Embedder:
        key = (shape, count)
        with self._lock:
            embedder = self._embedders.get(key)
            if embedder is None:
                embedder = _build_embedder(shape, count)
                self._embedders[key] = embedder
            return embedder

    def embed(self, template: str) -> str:
        """Insert the cluster label marker into *template*.

        Raises:
            EmbeddingError: If the template does not contain its delimiter
                the expected number of times.
        """
        return self.get(*classify(template)).embed(template)


_default_cache = EmbedderCache()


def embed(template: str, cache: EmbedderCache | None = None) -> str:
    return (cache or _default_cache).embed(template)


def clean_query(query: str) -> str:
    """Remove the comma and empty-selector artifacts of an empty substitution."""
    for old, new in _CLEANUP:
        query = query.replace(old, new)
    return query


def materialize(query: str, label_filter: LabelFilter | None) -> str:
    """Replace the markers with a filter's selector clauses and label names."""
    if label_filter is not None:
        query = query.replace(LABELS_PLACEHOLDER, label_filter.labels)
        query = query.replace(LABEL_NAMES_PLACEHOLDER, label_filter.label_names)
    return clean_query(query)
