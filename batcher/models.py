from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Literal, Optional, Tuple


# ---------------------------------------------------------------------------
# Stages and the fixed per-cycle slot order
# ---------------------------------------------------------------------------

Stage = Literal["stabilize", "grow", "harvest"]

STAGE_STABILIZE: Stage = "stabilize"
STAGE_GROW: Stage = "grow"
STAGE_HARVEST: Stage = "harvest"

Slot = Literal["stabilize_1", "grow", "stabilize_2", "harvest"]

SLOT_STABILIZE_1: Slot = "stabilize_1"
SLOT_GROW: Slot = "grow"
SLOT_STABILIZE_2: Slot = "stabilize_2"
SLOT_HARVEST: Slot = "harvest"

# Dispatch order inside one cycle; never reordered, zero slots are skipped.
SLOT_ORDER: Tuple[Slot, ...] = (
    SLOT_STABILIZE_1,
    SLOT_GROW,
    SLOT_STABILIZE_2,
    SLOT_HARVEST,
)

SLOT_STAGE: Dict[str, Stage] = {
    SLOT_STABILIZE_1: STAGE_STABILIZE,
    SLOT_GROW: STAGE_GROW,
    SLOT_STABILIZE_2: STAGE_STABILIZE,
    SLOT_HARVEST: STAGE_HARVEST,
}


# ---------------------------------------------------------------------------
# Fleet
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class WorkerNode:
    """Point-in-time capacity view of one worker node."""

    node_id: str
    total_capacity: float
    used_capacity: float = 0.0

    @property
    def free_capacity(self) -> float:
        return max(0.0, float(self.total_capacity) - float(self.used_capacity))


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Job:
    slot: Slot
    target: str
    requested_threads: int
    per_thread_cost: float
    duration_sec: float = 0.0

    @property
    def stage(self) -> Stage:
        return SLOT_STAGE[self.slot]


@dataclass(frozen=True)
class JobFragment:
    job: Job
    node_id: str
    threads: int

    @property
    def capacity(self) -> float:
        return self.threads * self.job.per_thread_cost


@dataclass(frozen=True)
class ProcessHandle:
    """What a job-execution facility hands back for a launched fragment."""

    node_id: str
    pid: int
    stage: Stage
    threads: int
    capacity: float
    started_at: float
    expires_at: Optional[float] = None
    extra: Dict[str, str] = field(default_factory=dict, compare=False)
