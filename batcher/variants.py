from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Dict

from components.snapshot_provider import TargetSnapshot

from .planner import PlanPolicy

WINDOW_FIXED = "fixed"
WINDOW_HALF_SHORTEST_STAGE = "half_shortest_stage"


@dataclass(frozen=True)
class BatchVariant:
    """
    One row of the scheduling table: thresholds plus timing for a mode.

    - step_delay_sec:        wait between two dispatched slots of the same cycle.
    - window:                how the end-of-cycle completion window is derived.
    - window_sec:            fixed window (or floor for derived windows).
    - idle_delay_sec:        wait when a cycle has nothing to dispatch.
    - await_completion:      poll every launched handle before the next slot.
    """
    name: str
    policy: PlanPolicy = field(default_factory=PlanPolicy)
    step_delay_sec: float = 0.05
    window: str = WINDOW_FIXED
    window_sec: float = 0.2
    idle_delay_sec: float = 0.5
    await_completion: bool = False

    def completion_window(self, snap: TargetSnapshot) -> float:
        if self.window == WINDOW_HALF_SHORTEST_STAGE:
            durations = [
                d for d in (snap.stabilize_time_sec, snap.grow_time_sec, snap.harvest_time_sec) if d > 0
            ]
            if durations:
                return max(self.window_sec, min(durations) / 2.0)
        return self.window_sec


VARIANTS: Dict[str, BatchVariant] = {
    # Weaken -> grow -> weaken -> hack with short fixed offsets.
    "batch": BatchVariant(name="batch"),
    # Same thresholds, no step offset, next pass after half the shortest stage.
    "formulas": BatchVariant(
        name="formulas",
        step_delay_sec=0.0,
        window=WINDOW_HALF_SHORTEST_STAGE,
        window_sec=0.0,
    ),
    # Each slot runs to completion before the next one starts; smaller harvest share.
    "sequential": BatchVariant(
        name="sequential",
        policy=PlanPolicy(harvest_fraction=0.10),
        step_delay_sec=0.1,
        window_sec=0.1,
        await_completion=True,
    ),
}


def get_variant(name: str) -> BatchVariant:
    key = (name or "").strip().lower()
    try:
        return VARIANTS[key]
    except KeyError:
        raise ValueError(f"unknown batch mode {name!r} (expected one of {', '.join(sorted(VARIANTS))})") from None


def with_harvest_fraction(variant: BatchVariant, harvest_fraction: float) -> BatchVariant:
    """Copy of a variant with the harvest share overridden (CLI / env tuning)."""
    return replace(variant, policy=replace(variant.policy, harvest_fraction=harvest_fraction))
