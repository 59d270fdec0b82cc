"""Parallel-for primitive used for batch fan-out and stage-level splitting."""

from __future__ import annotations

from concurrent.futures import Executor
from typing import Callable, List, Tuple


def parallel_for(
    count: int,
    body: Callable[[int], None],
    *,
    grain: int = 1,
    executor: Executor | None = None,
) -> None:
    """Run ``body(i)`` for every ``i`` in ``range(count)``.

    Work is submitted to ``executor`` only when ``count`` exceeds ``grain``;
    otherwise every index runs on the calling thread. Returns once all
    indices are done, re-raising the first worker exception.
    """

    if count <= 0:
        return
    if executor is None or count <= grain:
        for index in range(count):
            body(index)
        return
    futures = [executor.submit(body, index) for index in range(count)]
    for future in futures:
        future.result()


def split_range(start: int, size: int, parts: int) -> List[Tuple[int, int]]:
    """Split ``[start, start + size)`` into at most ``parts`` contiguous ranges.

    Every range but the last has ``ceil(size / parts)`` elements; empty
    ranges are dropped.
    """

    if size <= 0 or parts <= 0:
        return []
    per_part = (size + parts - 1) // parts
    end = start + size
    ranges = []
    for part in range(parts):
        lo = start + part * per_part
        hi = min(end, lo + per_part)
        if lo >= hi:
            break
        ranges.append((lo, hi))
    return ranges


__all__ = ["parallel_for", "split_range"]
