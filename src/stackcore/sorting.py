"""
Order statistics: sorting, k-th element selection and medians.

The functions of this module fall into two families with different
contracts on their argument:

- Destructive (the buffer is reordered in place): `sort_in_place`,
  `sortnet`, `sortnet_median`, `quickselect`, `select_median`.
  Callers must not rely on the order of the buffer after the call.
- Non-destructive (the buffer is never written): `histogram_median`,
  `histogram_median_float`, `quick_median`.

Destructive functions require a writable, C-contiguous numpy array so that
the reordering is visible to the caller. Medians are returned as Python
floats; even sizes average the two central elements.
"""

from __future__ import annotations

import threading

import numpy as np

from .parallel import parallel_for

# Segments shorter than this are finished with insertion sort
INSERTION_SORT_THRESHOLD = 32

# Sizes handled by the sorting networks
SORTNET_MAX = 9

# Below this size the histogram median delegates to a sorting network
HISTOGRAM_MIN_SIZE = 10

# Optimal comparator sequences for sizes 2..9 (compare-and-swap pairs)
SORTING_NETWORKS: dict[int, tuple[tuple[int, int], ...]] = {
    1: (),
    2: ((0, 1),),
    3: ((0, 1), (1, 2), (0, 1)),
    4: ((0, 1), (2, 3), (0, 2), (1, 3), (1, 2)),
    5: ((0, 1), (2, 3), (1, 3), (2, 4), (0, 2),
        (1, 4), (1, 2), (3, 4), (2, 3)),
    6: ((0, 1), (2, 3), (4, 5), (0, 2), (3, 5),
        (1, 4), (0, 1), (2, 3), (4, 5), (1, 2), (3, 4),
        (2, 3)),
    7: ((1, 2), (3, 4), (5, 6), (0, 2), (4, 6), (3, 5),
        (2, 6), (1, 5), (0, 4), (2, 5), (0, 3), (2, 4),
        (1, 3), (0, 1), (2, 3), (4, 5)),
    8: ((0, 1), (2, 3), (4, 5), (6, 7),
        (0, 2), (1, 3), (4, 6), (5, 7),
        (1, 2), (5, 6),
        (0, 4), (1, 5), (2, 6), (3, 7),
        (2, 4), (3, 5),
        (1, 2), (3, 4), (5, 6)),
    9: ((1, 8), (2, 7), (3, 6), (4, 5),
        (1, 4), (5, 8),
        (0, 2), (6, 7),
        (2, 6), (7, 8),
        (0, 3), (4, 5),
        (0, 1), (3, 5), (6, 7),
        (2, 4),
        (1, 3), (5, 7),
        (4, 6),
        (1, 2), (3, 4), (5, 6), (7, 8),
        (2, 3), (4, 5)),
}


def _writable_flat(buffer: np.ndarray) -> np.ndarray:
    """Return a 1-D view of `buffer` that shares its memory."""
    if not isinstance(buffer, np.ndarray):
        raise TypeError(f"Expected a numpy array, got {type(buffer).__name__}")
    if not buffer.flags.c_contiguous or not buffer.flags.writeable:
        raise ValueError("In-place ordering requires a writable C-contiguous array")
    return buffer.reshape(-1)


def _check_size(n: int) -> None:
    if n < 1:
        raise ValueError("Cannot compute order statistics of an empty buffer")


def _median_of_sorted(values, n: int) -> float:
    k = n // 2
    if n % 2 == 0:
        return (float(values[k - 1]) + float(values[k])) / 2.0
    return float(values[k])


def _insertion_sort(values: list, lo: int, hi: int) -> None:
    for i in range(lo + 1, hi):
        current = values[i]
        j = i - 1
        while j >= lo and values[j] > current:
            values[j + 1] = values[j]
            j -= 1
        values[j + 1] = current


def _hybrid_quicksort(values: list) -> None:
    # Explicit stack of [lo, hi) segments instead of native recursion
    pending = [(0, len(values))]
    while pending:
        lo, hi = pending.pop()
        if hi - lo < INSERTION_SORT_THRESHOLD:
            _insertion_sort(values, lo, hi)
            continue

        pivot = values[lo + (hi - lo) // 2]
        left = lo
        right = hi - 1
        while left <= right:
            if values[left] < pivot:
                left += 1
                continue
            if values[right] > pivot:
                right -= 1
                continue
            values[left], values[right] = values[right], values[left]
            left += 1
            right -= 1

        pending.append((lo, right + 1))
        pending.append((left, hi))


def sort_in_place(buffer: np.ndarray) -> None:
    """
    Sort a buffer in place with a hybrid quicksort.

    Segments shorter than 32 elements are finished with insertion sort,
    which has a lower constant cost and suits the nearly-sorted runs of
    real pixel data. Larger segments are split by a two-pointer (Hoare)
    partition around their middle element.

    Parameters
    ----------
    buffer : np.ndarray
        Writable, C-contiguous array of any shape; sorted as its flat
        row-major sequence.

    Notes
    -----
    Worst-case O(n^2) inputs are not guarded against beyond the middle
    pivot choice.

    The sort runs element by element in Python, which suits the per-pixel
    sample stacks (a few to a few thousand values). Whole frames should go
    through `quick_median`, `histogram_median` or `numpy.sort` instead.
    """
    flat = _writable_flat(buffer)
    if flat.size < 2:
        return
    values = flat.tolist()
    _hybrid_quicksort(values)
    flat[:] = values


def sortnet(buffer: np.ndarray) -> None:
    """
    Sort a buffer of 1 to 9 elements in place with an optimal sorting network.

    Sizes outside that range are left untouched.
    """
    flat = _writable_flat(buffer)
    network = SORTING_NETWORKS.get(flat.size)
    if network is None:
        return
    values = flat.tolist()
    for i, j in network:
        if values[i] > values[j]:
            values[i], values[j] = values[j], values[i]
    flat[:] = values


def sortnet_median(buffer: np.ndarray) -> float:
    """
    Median of 1 to 9 elements through a sorting network (in-place sort).

    Raises
    ------
    ValueError
        If the buffer is empty or holds more than 9 elements.
    """
    flat = _writable_flat(buffer)
    n = flat.size
    _check_size(n)
    if n > SORTNET_MAX:
        raise ValueError(f"Sorting networks handle at most {SORTNET_MAX} elements, got {n}")
    sortnet(flat)
    return _median_of_sorted(flat, n)


def quickselect(buffer: np.ndarray, k: int):
    """
    Return the k-th smallest element (0-based), reordering the buffer.

    Iterative partitioning around the middle element of the active window.
    Each pass is a vectorized three-way split (below, equal, above the
    pivot) rather than a two-pointer exchange, so runs of equal pixel
    values end the search early. After the call, every element before
    index k is <= buffer[k] and every element after it is >= buffer[k].

    Parameters
    ----------
    buffer : np.ndarray
        Writable, C-contiguous array (flattened row-major).
    k : int
        Rank of the requested element, 0 <= k < n.

    Returns
    -------
    scalar
        The k-th order statistic, with the buffer's element type.

    Raises
    ------
    ValueError
        If the buffer is empty, `k` is out of range, or a float buffer
        holds NaN (NaN has no rank).
    """
    flat = _writable_flat(buffer)
    n = flat.size
    _check_size(n)
    if not 0 <= k < n:
        raise ValueError(f"Rank {k} out of range for {n} elements")
    if flat.dtype.kind == "f" and np.isnan(flat).any():
        raise ValueError("Cannot select from a buffer containing NaN")

    left, right = 0, n  # active window [left, right)
    while right - left > 1:
        window = flat[left:right]
        pivot = window[(right - left) // 2]
        below = window[window < pivot]
        equal = window[window == pivot]
        above = window[window > pivot]
        n_below = below.size
        n_equal = equal.size
        window[:n_below] = below
        window[n_below:n_below + n_equal] = equal
        window[n_below + n_equal:] = above

        if k < left + n_below:
            right = left + n_below
        elif k < left + n_below + n_equal:
            return flat[k]
        else:
            left = left + n_below + n_equal
    return flat[k]


def select_median(buffer: np.ndarray) -> float:
    """
    Median by destructive selection.

    Buffers of fewer than 9 elements go through a sorting network, larger
    ones through `quickselect` at k = n // 2. For even sizes the lower
    central element is the maximum of the partition left of k.

    Parameters
    ----------
    buffer : np.ndarray
        Writable, C-contiguous array; reordered by the call.

    Returns
    -------
    float
        The median.

    Raises
    ------
    ValueError
        If the buffer is empty.
    """
    flat = _writable_flat(buffer)
    n = flat.size
    _check_size(n)
    if n < SORTNET_MAX:
        return sortnet_median(flat)

    k = n // 2
    upper = float(quickselect(flat, k))
    if n % 2 == 0:
        lower = float(flat[:k].max())
        return (lower + upper) / 2.0
    return upper


def histogram_median(buffer: np.ndarray, threads: int = 1) -> float:
    """
    Median of a bounded unsigned integer buffer in linear time.

    A histogram of counts over the sample domain (0..255 or 0..65535) is
    built per worker over disjoint sub-ranges of the buffer, merged under a
    lock, then walked cumulatively to the first bin whose count exceeds
    n // 2 (and n // 2 - 1 for even sizes). The buffer is never modified.

    Parameters
    ----------
    buffer : np.ndarray
        uint8 or uint16 samples.
    threads : int, default 1
        Worker count for histogram construction.

    Returns
    -------
    float
        The median.

    Raises
    ------
    ValueError
        If the buffer is empty.
    TypeError
        If the element type is not a bounded unsigned integer.
    """
    data = np.asarray(buffer)
    if data.dtype not in (np.uint8, np.uint16):
        raise TypeError(f"Histogram median needs uint8 or uint16 samples, got {data.dtype}")
    flat = data.ravel()
    n = flat.size
    _check_size(n)
    if n < HISTOGRAM_MIN_SIZE:
        return sortnet_median(flat.copy()) if n <= SORTNET_MAX else _median_of_sorted(np.sort(flat), n)

    n_bins = int(np.iinfo(data.dtype).max) + 1
    histogram = np.zeros(n_bins, dtype=np.int64)
    lock = threading.Lock()

    def _accumulate(start: int, stop: int) -> None:
        partial = np.bincount(flat[start:stop], minlength=n_bins)
        with lock:
            histogram[:] += partial

    parallel_for(n, _accumulate, threads=threads)

    cumulative = np.cumsum(histogram)
    k = n // 2
    upper = int(np.searchsorted(cumulative, k, side="right"))
    if n % 2 == 0:
        lower = int(np.searchsorted(cumulative, k - 1, side="right"))
        return (lower + upper) / 2.0
    return float(upper)


def histogram_median_float(buffer: np.ndarray) -> float:
    """
    Median of an unbounded or float buffer through the percentile routine.

    The buffer is never modified.
    """
    flat = np.asarray(buffer).ravel()
    _check_size(flat.size)
    return float(np.percentile(flat, 50.0))


def quick_median(buffer: np.ndarray, threads: int = 1) -> float:
    """
    Non-destructive median choosing the best routine for the element type.

    Bounded unsigned integers use `histogram_median`, everything else
    `histogram_median_float`.
    """
    data = np.asarray(buffer)
    if data.dtype in (np.uint8, np.uint16):
        return histogram_median(data, threads=threads)
    return histogram_median_float(data)
