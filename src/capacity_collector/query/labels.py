"""Small query-building helpers shared by the platform adapter and callers."""

from __future__ import annotations

import enum
from dataclasses import dataclass


class LabelReplaceCondition(enum.StrEnum):
    """Regex a ``label_replace`` source label must match."""

    HAS_VALUE = ".+"
    ALWAYS = ".*"
    EMPTY = "^$"


def label_replace(
    query: str,
    dst_label: str,
    src_label: str,
    condition: LabelReplaceCondition = LabelReplaceCondition.HAS_VALUE,
    dst_value: str = "$1",
) -> str:
    """Wrap *query* so *dst_label* is set from *src_label* when it matches."""
    return f'label_replace({query}, "{dst_label}", "{dst_value}", "{src_label}", "({condition})")'


@dataclass(frozen=True)
class QueryWrapper:
    """Surround a query with fixed text, e.g. an aggregation and its ``by`` clause."""

    prefix: str = ""
    suffix: str = ""

    def wrap(self, query: str) -> str:
        return self.prefix + query + self.suffix
