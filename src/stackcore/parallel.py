"""
Data-parallel loop helpers.

Fixed-extent loops are split into disjoint index ranges and executed on a
thread pool. NumPy releases the GIL inside its kernels, so threads give real
parallelism for the vectorized bodies used here. Workers never share mutable
state: results come back through a reduction performed by the caller's
thread.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Below this many iterations, loops run inline on the calling thread
PARALLEL_THRESHOLD = 10000


def split_range(n: int, parts: int) -> list[tuple[int, int]]:
    """
    Split [0, n) into at most `parts` contiguous, non-empty ranges.

    Parameters
    ----------
    n : int
        Loop extent.
    parts : int
        Requested number of ranges.

    Returns
    -------
    list[tuple[int, int]]
        (start, stop) pairs covering [0, n) exactly once, in order.
    """
    if n <= 0:
        return []
    parts = max(1, min(parts, n))
    base, extra = divmod(n, parts)
    ranges = []
    start = 0
    for i in range(parts):
        stop = start + base + (1 if i < extra else 0)
        ranges.append((start, stop))
        start = stop
    return ranges


def parallel_map_ranges(
    n: int,
    body: Callable[[int, int], T],
    threads: int = 1,
    threshold: int = PARALLEL_THRESHOLD,
) -> list[T]:
    """
    Run `body(start, stop)` over disjoint sub-ranges of [0, n).

    Results are returned in range order, so an order-sensitive reduction
    applied by the caller is deterministic for a given thread count.
    """
    if threads <= 1 or n < threshold:
        return [body(0, n)] if n > 0 else []

    ranges = split_range(n, threads)
    with ThreadPoolExecutor(max_workers=len(ranges)) as executor:
        futures = [executor.submit(body, start, stop) for start, stop in ranges]
        return [future.result() for future in futures]


def parallel_for(
    n: int,
    body: Callable[[int, int], None],
    threads: int = 1,
    threshold: int = PARALLEL_THRESHOLD,
) -> None:
    """Run a side-effecting `body(start, stop)` whose writes are disjoint per range."""
    parallel_map_ranges(n, body, threads=threads, threshold=threshold)


def parallel_reduce(
    n: int,
    body: Callable[[int, int], T],
    combine: Callable[[T, T], T],
    initial: T,
    threads: int = 1,
    threshold: int = PARALLEL_THRESHOLD,
) -> T:
    """
    Map `body` over sub-ranges of [0, n) and fold the partial results.

    Parameters
    ----------
    n : int
        Loop extent.
    body : callable
        Computes the partial result of one range.
    combine : callable
        Associative reduction of two partial results.
    initial : object
        Identity element of the reduction.
    threads : int, default 1
        Worker count.
    threshold : int
        Extent below which the loop runs inline.

    Returns
    -------
    object
        The reduced value.
    """
    result = initial
    for partial in parallel_map_ranges(n, body, threads=threads, threshold=threshold):
        result = combine(result, partial)
    return result


def parallel_tasks(
    tasks: list[Callable[[], T]],
    threads: int = 1,
) -> list[T]:
    """Execute independent zero-argument tasks, returning results in task order."""
    if threads <= 1 or len(tasks) <= 1:
        return [task() for task in tasks]
    with ThreadPoolExecutor(max_workers=min(threads, len(tasks))) as executor:
        futures = [executor.submit(task) for task in tasks]
        return [future.result() for future in futures]
