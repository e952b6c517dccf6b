"""Small helpers on sequences of ints and strings."""

from __future__ import annotations

import re
from typing import Hashable, Iterable, TypeVar

T = TypeVar("T")
H = TypeVar("H", bound=Hashable)

_INT = re.compile(r"[+-]?[0-9]+")
_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1


def unique(values: Iterable[T]) -> list[T]:
    """Sorted distinct values."""
    return sorted(set(values))


def has_intersection(list1: Iterable[H], list2: Iterable[H]) -> bool:
    """True if the two collections share at least one element."""
    return not set(list1).isdisjoint(list2)


def is_int(s: str) -> bool:
    """True if ``s`` is a plain decimal integer that fits in 64 bits."""
    if not _INT.fullmatch(s):
        return False
    return _INT64_MIN <= int(s) <= _INT64_MAX


def merge(a: Iterable[H], b: Iterable[H]) -> list[H]:
    """Distinct values of both collections, first occurrence order."""
    return list(dict.fromkeys([*a, *b]))