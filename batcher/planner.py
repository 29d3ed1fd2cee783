from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Dict, List, Tuple

from components.snapshot_provider import TargetSnapshot

from .models import (
    SLOT_GROW,
    SLOT_HARVEST,
    SLOT_ORDER,
    SLOT_STABILIZE_1,
    SLOT_STABILIZE_2,
    SLOT_STAGE,
    Job,
    Slot,
)
from .utils import ceil_threads

logger = logging.getLogger(__name__)
if not logger.handlers:
    logger.addHandler(logging.NullHandler())

# Degenerate-computation flags attached to a plan (never raised)
FLAG_HARVEST_NOT_VIABLE = "harvest_not_viable"
FLAG_GROWTH_NOT_VIABLE = "growth_not_viable"
FLAG_WEAKEN_NOT_VIABLE = "weaken_not_viable"
FLAG_COUNT_NOT_FINITE = "count_not_finite"

# Which branch of the decision policy produced the plan
MODE_STABILIZE = "stabilize"
MODE_GROW = "grow"
MODE_HARVEST = "harvest"


@dataclass(frozen=True)
class PlanPolicy:
    """
    Global tunables for the plan calculator.

    - harvest_fraction:       share of the target's value one harvest batch takes.
    - defense_slack:          defense may sit this far above its floor before a stabilize-only batch.
    - value_threshold_frac:   grow until value reaches this share of max value.
    """
    harvest_fraction: float = 0.25
    defense_slack: float = 5.0
    value_threshold_frac: float = 0.75


@dataclass(frozen=True)
class BatchPlan:
    target: str
    mode: str
    threads: Dict[str, int]
    jobs: Tuple[Job, ...]
    flags: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def stabilize_threads(self) -> int:
        return self.threads.get(SLOT_STABILIZE_1, 0)

    @property
    def grow_threads(self) -> int:
        return self.threads.get(SLOT_GROW, 0)

    @property
    def corrective_threads(self) -> int:
        return self.threads.get(SLOT_STABILIZE_2, 0)

    @property
    def harvest_threads(self) -> int:
        return self.threads.get(SLOT_HARVEST, 0)

    @property
    def is_empty(self) -> bool:
        return not self.jobs


def _finite_ceil(x: float, flags: List[str]) -> int:
    # a vanishing per-thread effect overflows the quotient to inf
    if not math.isfinite(x):
        if FLAG_COUNT_NOT_FINITE not in flags:
            flags.append(FLAG_COUNT_NOT_FINITE)
        return 0
    return ceil_threads(x)


def _stabilize_threads_for(defense_delta: float, weaken_effect: float, flags: List[str]) -> int:
    if weaken_effect <= 0:
        return 0
    return _finite_ceil(defense_delta / weaken_effect, flags)


def _residual_stabilize(snap: TargetSnapshot, weaken_effect: float, flags: List[str]) -> int:
    """Pre-stabilize back to the floor when defense sits inside the slack band."""
    if snap.defense_level <= snap.min_defense:
        return 0
    return _stabilize_threads_for(snap.defense_level - snap.min_defense, weaken_effect, flags)


def grow_threads_for(multiplier: float, growth_rate_per_thread: float) -> int:
    """Threads needed so growth_rate ** threads >= multiplier."""
    if multiplier <= 1.0 or growth_rate_per_thread <= 1.0:
        return 0
    return ceil_threads(math.log(multiplier) / math.log(growth_rate_per_thread))


def compute_plan(snap: TargetSnapshot, policy: PlanPolicy = PlanPolicy()) -> BatchPlan:
    """
    Turn one snapshot into per-slot thread counts.

    Priority order:
      1) defense above floor + slack  -> stabilize only
      2) value below threshold        -> grow + corrective stabilize
      3) otherwise                    -> harvest + corrective stabilize

    In 2) and 3) any defense left above the floor is stabilized first (Stabilize_1).
    Counts that overflow are forced to 0 and flagged.
    """
    threads: Dict[str, int] = {slot: 0 for slot in SLOT_ORDER}
    flags: List[str] = []

    weaken = float(snap.weaken_effect_per_thread)
    if weaken <= 0:
        flags.append(FLAG_WEAKEN_NOT_VIABLE)

    security_threshold = snap.min_defense + policy.defense_slack
    value_threshold = snap.max_value * policy.value_threshold_frac

    if snap.defense_level > security_threshold:
        mode = MODE_STABILIZE
        threads[SLOT_STABILIZE_1] = _stabilize_threads_for(snap.defense_level - snap.min_defense, weaken, flags)

    elif snap.value < value_threshold:
        mode = MODE_GROW
        multiplier = snap.max_value / max(snap.value, 1.0)
        if snap.growth_rate_per_thread <= 1.0:
            flags.append(FLAG_GROWTH_NOT_VIABLE)
        grow = grow_threads_for(multiplier, snap.growth_rate_per_thread)
        threads[SLOT_GROW] = grow
        threads[SLOT_STABILIZE_2] = _stabilize_threads_for(grow * snap.growth_security_per_thread, weaken, flags)
        threads[SLOT_STABILIZE_1] = _residual_stabilize(snap, weaken, flags)

    else:
        mode = MODE_HARVEST
        yield_per_thread = float(snap.harvest_yield_per_thread)
        if yield_per_thread > 0:
            harvest = _finite_ceil(policy.harvest_fraction / yield_per_thread, flags)
        else:
            harvest = 0
            flags.append(FLAG_HARVEST_NOT_VIABLE)
        threads[SLOT_HARVEST] = harvest
        threads[SLOT_STABILIZE_2] = _stabilize_threads_for(harvest * snap.harvest_security_per_thread, weaken, flags)
        threads[SLOT_STABILIZE_1] = _residual_stabilize(snap, weaken, flags)

    jobs = tuple(_job_for(snap, slot, threads[slot]) for slot in SLOT_ORDER if threads[slot] > 0)

    plan = BatchPlan(target=snap.target, mode=mode, threads=threads, jobs=jobs, flags=tuple(flags))
    for flag in plan.flags:
        logger.info("[plan] %s: %s, dependent threads forced to 0", snap.target, flag)
    if logger.isEnabledFor(logging.DEBUG):
        logger.debug(
            "[plan] %s mode=%s defense=%.3f/%.3f value=%.0f/%.0f threads=%s",
            snap.target, mode, snap.defense_level, snap.min_defense,
            snap.value, snap.max_value, threads,
        )
    return plan


def _job_for(snap: TargetSnapshot, slot: Slot, requested: int) -> Job:
    stage = SLOT_STAGE[slot]
    return Job(
        slot=slot,
        target=snap.target,
        requested_threads=int(requested),
        per_thread_cost=snap.stage_cost(stage),
        duration_sec=snap.stage_duration(stage),
    )


__all__ = [
    "PlanPolicy",
    "BatchPlan",
    "compute_plan",
    "grow_threads_for",
    "FLAG_HARVEST_NOT_VIABLE",
    "FLAG_GROWTH_NOT_VIABLE",
    "FLAG_WEAKEN_NOT_VIABLE",
    "FLAG_COUNT_NOT_FINITE",
    "MODE_STABILIZE",
    "MODE_GROW",
    "MODE_HARVEST",
]
