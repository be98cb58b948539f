"""Tests for feature partitioning and fork/join execution."""

import numpy as np
import pytest
from joblib import Parallel

from lfc_shrink.partition import (
    default_pool,
    map_partitions,
    plan_partitions,
    pool_workers,
    run_partitions,
)


class TestPlan:
    def test_labels_sorted_and_balanced(self):
        plan = plan_partitions(10, n_workers=3)
        assert plan.n_chunks == 3
        assert np.all(np.diff(plan.labels) >= 0)
        sizes = [len(p) for p in plan.partitions]
        assert sizes == [4, 3, 3]

    def test_bpx_multiplies_chunks(self):
        plan = plan_partitions(20, n_workers=2, bpx=3)
        assert plan.n_chunks == 6
        assert len(plan.partitions) == 6

    def test_partitions_cover_rows_in_order(self):
        plan = plan_partitions(17, n_workers=4, bpx=2)
        np.testing.assert_array_equal(np.concatenate(plan.partitions), np.arange(17))

    def test_more_chunks_than_rows(self):
        plan = plan_partitions(3, n_workers=8)
        assert plan.n_rows == 3
        assert [len(p) for p in plan.partitions] == [1, 1, 1]

    def test_empty(self):
        assert plan_partitions(0, n_workers=2).partitions == []

    @pytest.mark.parametrize("bpx, n_workers", [(0, 2), (2, 0), (-1, 1)])
    def test_invalid_sizes(self, bpx, n_workers):
        with pytest.raises(ValueError, match="at least 1"):
            plan_partitions(10, n_workers=n_workers, bpx=bpx)


class TestExecution:
    def test_results_in_plan_order(self):
        pool = Parallel(n_jobs=2, prefer="threads")
        plan = plan_partitions(9, n_workers=2, bpx=2)
        results = run_partitions(lambda idx: idx.sum(), plan, pool)
        assert results == [int(p.sum()) for p in plan.partitions]

    def test_map_partitions_returns_positions(self):
        pool = Parallel(n_jobs=2, prefer="threads")
        values = np.arange(11.0) ** 2
        parts, positions = map_partitions(lambda idx: values[idx], 11, pool)
        out = np.empty(11)
        for part, idx in zip(parts, positions):
            out[idx] = part
        np.testing.assert_array_equal(out, values)

    def test_first_error_propagates(self):
        pool = Parallel(n_jobs=2, prefer="threads")

        def boom(idx):
            if 0 in idx:
                raise RuntimeError("chunk failed")
            return idx

        with pytest.raises(RuntimeError, match="chunk failed"):
            map_partitions(boom, 6, pool)

    def test_pool_workers(self):
        assert pool_workers(Parallel(n_jobs=3)) == 3
        assert pool_workers(Parallel(n_jobs=1)) == 1

    def test_default_pool_uses_threads(self):
        pool = default_pool()
        assert pool.n_jobs == -1
        assert pool_workers(pool) >= 1
