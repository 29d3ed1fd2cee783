from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Literal, Sequence, Tuple

from .models import Job, JobFragment, WorkerNode

# --------------------------------------------------------------------
# Module logger
# --------------------------------------------------------------------
_logger = logging.getLogger("batcher.allocator")
if not _logger.handlers:
    _logger.addHandler(logging.NullHandler())

AllocationStatus = Literal["complete", "partial", "exhausted"]

ALLOC_COMPLETE: AllocationStatus = "complete"
ALLOC_PARTIAL: AllocationStatus = "partial"
ALLOC_EXHAUSTED: AllocationStatus = "exhausted"


# -----------------------------
# Result
# -----------------------------
@dataclass(frozen=True)
class AllocationResult:
    """
    Outcome of packing one job onto the fleet.

    - fragments:   one entry per node touched, in candidate order.
    - started:     threads placed (sum over fragments).
    - remaining:   requested - started; never retried inside the same call.
    """
    job: Job
    fragments: Tuple[JobFragment, ...]
    started: int
    remaining: int

    @property
    def requested(self) -> int:
        return self.job.requested_threads

    @property
    def status(self) -> AllocationStatus:
        if self.remaining <= 0:
            return ALLOC_COMPLETE
        if self.started <= 0:
            return ALLOC_EXHAUSTED
        return ALLOC_PARTIAL

    @property
    def exhausted(self) -> bool:
        return self.status == ALLOC_EXHAUSTED

    @property
    def partial(self) -> bool:
        return self.status == ALLOC_PARTIAL


# -----------------------------
# Helpers
# -----------------------------
def threads_that_fit(free_capacity: float, per_thread_cost: float) -> int:
    if per_thread_cost <= 0:
        raise ValueError(f"per_thread_cost must be positive, got {per_thread_cost!r}")
    if free_capacity <= 0:
        return 0
    n = math.floor(free_capacity / per_thread_cost)
    # the quotient can land a hair either side of an exact fit; the product decides
    if (n + 1) * per_thread_cost <= free_capacity:
        n += 1
    while n > 0 and n * per_thread_cost > free_capacity:
        n -= 1
    return max(0, n)


# -----------------------------
# Public API
# -----------------------------
def allocate(job: Job, candidates: Sequence[WorkerNode]) -> AllocationResult:
    """
    Greedily pack job.requested_threads onto candidates in the given priority order.

    Each node gets min(remaining, floor(free / cost)) threads. The function is pure:
    identical job + identical capacity view -> identical fragments. Capacity is read
    from the WorkerNode snapshots only; the caller owns re-reading the fleet.
    """
    remaining = max(0, int(job.requested_threads))
    started = 0
    fragments: list[JobFragment] = []

    for node in candidates:
        if remaining <= 0:
            break
        fit = threads_that_fit(node.free_capacity, job.per_thread_cost)
        n = min(remaining, fit)
        if n <= 0:
            if _logger.isEnabledFor(logging.DEBUG):
                _logger.debug(
                    "[alloc] %s/%s: no room on %s (free=%.2f per_thread=%.2f)",
                    job.target, job.slot, node.node_id, node.free_capacity, job.per_thread_cost,
                )
            continue
        fragments.append(JobFragment(job=job, node_id=node.node_id, threads=n))
        remaining -= n
        started += n

    result = AllocationResult(job=job, fragments=tuple(fragments), started=started, remaining=remaining)
    if _logger.isEnabledFor(logging.DEBUG):
        _logger.debug(
            "[alloc] %s/%s: requested=%d started=%d remaining=%d nodes=%s",
            job.target, job.slot, job.requested_threads, started, remaining,
            [(f.node_id, f.threads) for f in fragments],
        )
    return result


def log_allocation_outcome(
    job: Job,
    status: AllocationStatus,
    started: int,
    nodes: int,
    logger: logging.Logger = _logger,
) -> None:
    """
    Exhaustion is an error, a partial batch a warning; neither is fatal.

    Callers pass what actually started, so launches refused after allocation count as missing.
    """
    if status == ALLOC_EXHAUSTED:
        logger.error(
            "[alloc] could not start any threads for %s on %s (needed %d); stage skipped this cycle",
            job.slot, job.target, job.requested_threads,
        )
    elif status == ALLOC_PARTIAL:
        logger.warning(
            "[alloc] only started %d/%d threads for %s on %s due to capacity",
            started, job.requested_threads, job.slot, job.target,
        )
    elif logger.isEnabledFor(logging.INFO):
        logger.info(
            "[alloc] started %d threads for %s on %s across %d node(s)",
            started, job.slot, job.target, nodes,
        )


__all__ = [
    "AllocationStatus",
    "ALLOC_COMPLETE",
    "ALLOC_PARTIAL",
    "ALLOC_EXHAUSTED",
    "AllocationResult",
    "allocate",
    "threads_that_fit",
    "log_allocation_outcome",
]
