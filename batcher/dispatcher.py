from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Tuple

from components.executors import JobExecutor

from .allocator import ALLOC_COMPLETE, ALLOC_EXHAUSTED, ALLOC_PARTIAL, AllocationResult, AllocationStatus
from .models import JobFragment, ProcessHandle

logger = logging.getLogger(__name__)
if not logger.handlers:
    logger.addHandler(logging.NullHandler())


@dataclass(frozen=True)
class DispatchOutcome:
    allocation: AllocationResult
    handles: Tuple[ProcessHandle, ...]
    failed: Tuple[JobFragment, ...]

    @property
    def started(self) -> int:
        return sum(h.threads for h in self.handles)

    @property
    def status(self) -> AllocationStatus:
        """Allocation status as seen after launch; refused fragments count as not started."""
        requested = self.allocation.requested
        if self.started >= requested:
            return ALLOC_COMPLETE
        if self.started <= 0:
            return ALLOC_EXHAUSTED
        return ALLOC_PARTIAL


class Dispatcher:
    """Turns allocated fragments into running jobs: place the payload, then launch."""

    def __init__(self, executor: JobExecutor, payload_id: str, *, force: bool = False) -> None:
        self.executor = executor
        self.payload_id = payload_id
        self.force = force
        self._redeployed: set[str] = set()

    def dispatch(self, allocation: AllocationResult) -> DispatchOutcome:
        handles: List[ProcessHandle] = []
        failed: List[JobFragment] = []
        for frag in allocation.fragments:
            handle = self._dispatch_fragment(frag)
            if handle is None:
                failed.append(frag)
            else:
                handles.append(handle)
        return DispatchOutcome(allocation=allocation, handles=tuple(handles), failed=tuple(failed))

    def _dispatch_fragment(self, frag: JobFragment) -> ProcessHandle | None:
        job = frag.job
        # force-redeploy re-copies once per node per run, not on every fragment
        force = self.force and frag.node_id not in self._redeployed
        if not self.executor.place(self.payload_id, frag.node_id, force=force):
            logger.error("[dispatch] could not place %s on %s", self.payload_id, frag.node_id)
            return None
        if force:
            self._redeployed.add(frag.node_id)

        handle = self.executor.launch(self.payload_id, frag)
        if handle is None:
            logger.warning(
                "[dispatch] failed to start %s on %s despite sufficient capacity (%d threads)",
                job.slot, frag.node_id, frag.threads,
            )
            return None
        logger.info(
            "[dispatch] started %s on %s with %d/%d threads (pid=%s)",
            job.slot, frag.node_id, frag.threads, job.requested_threads, handle.pid,
        )
        return handle
