"""
Tests for the data-parallel loop helpers.
"""

import numpy as np
import pytest

from stackcore.parallel import parallel_for, parallel_reduce, parallel_tasks, split_range


class TestSplitRange:

    @pytest.mark.parametrize("n,parts", [(10, 3), (3, 8), (100, 1), (7, 7)])
    def test_covers_range(self, n, parts):
        ranges = split_range(n, parts)
        assert ranges[0][0] == 0
        assert ranges[-1][1] == n
        assert all(stop > start for start, stop in ranges)
        assert all(a[1] == b[0] for a, b in zip(ranges, ranges[1:]))
        assert len(ranges) == min(parts, n)

    def test_empty(self):
        assert split_range(0, 4) == []


class TestParallelLoops:

    def test_parallel_for_disjoint_writes(self):
        out = np.zeros(50000)

        def body(start, stop):
            out[start:stop] = np.arange(start, stop)

        parallel_for(out.size, body, threads=4)
        assert np.array_equal(out, np.arange(50000))

    def test_reduce_matches_serial(self, rng):
        values = rng.integers(0, 1000, 40000)

        def partial(start, stop):
            return int(values[start:stop].sum())

        total = parallel_reduce(values.size, partial, lambda a, b: a + b, 0, threads=3)
        assert total == int(values.sum())

    def test_tasks_keep_order(self):
        tasks = [(lambda i=i: i * i) for i in range(10)]
        assert parallel_tasks(tasks, threads=4) == [i * i for i in range(10)]

    def test_task_exception_propagates(self):
        def fail():
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError, match="boom"):
            parallel_tasks([lambda: 1, fail], threads=2)
