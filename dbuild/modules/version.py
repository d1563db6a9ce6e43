# dbuild/modules/version.py
"""
Version ordering used by upgrade.

Each version string is split on runs of non-digit characters; empty fields
count as 0, the shorter sequence is padded with 0, and fields are compared
as integers left to right.
"""

from __future__ import annotations

import enum
import re
from typing import List

_SEP_RE = re.compile(r"[^0-9]+")


class VersionOrder(enum.IntEnum):
    LESS = -1
    EQUAL = 0
    GREATER = 1


def _fields(version: str) -> List[int]:
    return [int(f) if f else 0 for f in _SEP_RE.split(version or "")]


def compare(a: str, b: str) -> VersionOrder:
    fa, fb = _fields(a), _fields(b)
    n = max(len(fa), len(fb))
    fa += [0] * (n - len(fa))
    fb += [0] * (n - len(fb))
    for x, y in zip(fa, fb):
        if x > y:
            return VersionOrder.GREATER
        if x < y:
            return VersionOrder.LESS
    return VersionOrder.EQUAL


def is_newer(candidate: str, installed: str) -> bool:
    return compare(candidate, installed) is VersionOrder.GREATER
