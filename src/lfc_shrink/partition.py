"""Feature partitioning for parallel shrinkage.

A :class:`PartitionPlan` splits the feature rows into
``K = bpx × n_workers`` contiguous, nearly equal chunks.  Labels are
``sort(arange(n_rows) % K)``, so chunk sizes differ by at most one and
the plan depends only on ``(n_rows, n_workers, bpx)``.  When there are
fewer rows than chunks the surplus chunks are empty and skipped.

Execution is a fork/join barrier over an explicit ``joblib.Parallel``
handle: every chunk is dispatched, the call blocks until all of them
finish, and the first chunk error propagates to the caller.  Results
come back in plan order, so concatenating them restores the original
row order.

Thread-based workers are the default.  The numerical kernels (LAPACK
solves, ``scipy.optimize``) release the GIL, and threads share the
read-only model without pickling it.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

import numpy as np
from joblib import Parallel, delayed, effective_n_jobs

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class PartitionPlan:
    """Assignment of each feature row to one chunk.

    Attributes:
        labels: Chunk label per row, non-decreasing.
        n_chunks: Number of chunks ``bpx × n_workers``.
    """

    labels: np.ndarray
    n_chunks: int

    @property
    def n_rows(self) -> int:
        return int(self.labels.shape[0])

    @property
    def partitions(self) -> list[np.ndarray]:
        """Row positions of each non-empty chunk, in chunk order."""
        return [
            idx
            for idx in (np.flatnonzero(self.labels == k) for k in range(self.n_chunks))
            if idx.size
        ]


def plan_partitions(n_rows: int, n_workers: int, bpx: int = 1) -> PartitionPlan:
    """Build the partition plan for *n_rows* features.

    Raises:
        ValueError: If *bpx* or *n_workers* is less than 1.
    """
    if bpx < 1:
        raise ValueError(f"bpx must be at least 1, got {bpx}")
    if n_workers < 1:
        raise ValueError(f"n_workers must be at least 1, got {n_workers}")
    n_chunks = int(bpx) * int(n_workers)
    labels = np.sort(np.arange(n_rows) % n_chunks)
    plan = PartitionPlan(labels=labels, n_chunks=n_chunks)
    logger.debug(
        "partition plan: %d rows into %d chunks (%d non-empty)",
        n_rows,
        n_chunks,
        len(plan.partitions),
    )
    return plan


def default_pool() -> Parallel:
    """A fresh thread pool using every available core."""
    return Parallel(n_jobs=-1, prefer="threads")


def pool_workers(pool: Parallel) -> int:
    """Number of workers *pool* runs concurrently."""
    return max(1, int(effective_n_jobs(pool.n_jobs)))


def run_partitions(
    fn: Callable[[np.ndarray], T],
    plan: PartitionPlan,
    pool: Parallel,
) -> list[T]:
    """Apply *fn* to every non-empty chunk of *plan* on *pool*.

    Blocks until every chunk has finished; the first exception raised
    by a chunk propagates.

    Returns:
        One result per non-empty chunk, in chunk order.
    """
    return list(pool(delayed(fn)(idx) for idx in plan.partitions))


def map_partitions(
    fn: Callable[[np.ndarray], T],
    n_rows: int,
    pool: Parallel,
    bpx: int = 1,
) -> tuple[list[T], list[np.ndarray]]:
    """Plan, dispatch and join; returns results with their row positions."""
    plan = plan_partitions(n_rows, pool_workers(pool), bpx)
    return run_partitions(fn, plan, pool), plan.partitions


__all__ = [
    "PartitionPlan",
    "default_pool",
    "map_partitions",
    "plan_partitions",
    "pool_workers",
    "run_partitions",
]
