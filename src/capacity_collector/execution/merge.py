"""Merging of per-cluster result maps."""

from __future__ import annotations

from collections.abc import Mapping
from typing import TypeVar

from capacity_collector.models import MergePolicy

V = TypeVar("V")


class MergeConflictError(Exception):
    """Raised by a FAIL merge when both maps contain the same key."""

    def __init__(self, key: str) -> None:
        super().__init__(f"key {key} already exists in map")
        self.key = key


def merge(
    first: Mapping[str, V] | None,
    second: Mapping[str, V] | None,
    policy: MergePolicy = MergePolicy.FAIL,
) -> dict[str, V]:
    """Return a new dict holding the entries of both maps.

    On a shared key, FAIL raises :class:`MergeConflictError`, IGNORE keeps the
    value from *first* and OVERRIDE takes the value from *second*. Neither
    input is modified.
    """
    merged = dict(first or {})
    for key, value in (second or {}).items():
        if key in merged:
            match policy:
                case MergePolicy.FAIL:
                    raise MergeConflictError(key)
                case MergePolicy.IGNORE:
                    continue
        merged[key] = value
    return merged
