"""Interval merge engine.

Turns any pile of ``(start_page, end_page)`` pairs for one book into the
number of distinct pages they cover:

• Pure Python, no I/O
• O(n log n) for the sort, O(n) for the sweep
• Adjacent ranges (``a.end + 1 == b.start``) are contiguous and merge

The store already returns intervals ordered by ``start_page``; pass
``presorted=True`` to skip the sort in that case.
"""

from __future__ import annotations

from typing import Iterable, List, Tuple

PageRange = Tuple[int, int]


def merge_intervals(intervals: Iterable[PageRange], presorted: bool = False) -> List[PageRange]:
    """Return the minimal list of non-overlapping, non-adjacent ranges covering *intervals*."""
    ordered = list(intervals) if presorted else sorted(intervals, key=lambda r: r[0])
    if not ordered:
        return []

    merged: List[PageRange] = []
    cur_start, cur_end = ordered[0]
    for start, end in ordered[1:]:
        if start <= cur_end + 1:
            cur_end = max(cur_end, end)
        else:
            merged.append((cur_start, cur_end))
            cur_start, cur_end = start, end
    merged.append((cur_start, cur_end))
    return merged


def count_unique_pages(intervals: Iterable[PageRange], presorted: bool = False) -> int:
    """Number of distinct page numbers covered by the union of *intervals*."""
    return sum(end - start + 1 for start, end in merge_intervals(intervals, presorted=presorted))
