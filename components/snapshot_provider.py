from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import List, Protocol

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from batcher.utils import MissingInputError, atomic_write_text, read_text_or_none
from extensions.output_paths import SNAPSHOT_SUFFIX, snapshot_path

logger = logging.getLogger(__name__)
if not logger.handlers:
    logger.addHandler(logging.NullHandler())


# --------------------------------------------------------------------------- #
# On-disk record
# --------------------------------------------------------------------------- #


class TargetSnapshot(BaseModel):
    """
    Point-in-time record of one target: live metrics, per-thread effect constants,
    stage duration estimates, per-thread capacity costs and the fleet membership lists.

    Stored flat with camelCase keys, one file per target. The scheduler treats it as a
    read-only, possibly stale copy.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    target: str = Field(..., min_length=1)

    # live metrics
    defense_level: float = Field(..., alias="defenseLevel")
    min_defense: float = Field(..., alias="minDefense")
    value: float = Field(..., ge=0.0)
    max_value: float = Field(..., alias="maxValue", ge=0.0)

    # per-thread effects
    weaken_effect_per_thread: float = Field(..., alias="weakenEffectPerThread")
    harvest_yield_per_thread: float = Field(..., alias="harvestYieldPerThread")
    growth_security_per_thread: float = Field(0.004, alias="growthSecurityPerThread")
    harvest_security_per_thread: float = Field(0.002, alias="harvestSecurityPerThread")
    growth_rate_per_thread: float = Field(1.0, alias="growthRatePerThread")

    # stage duration estimates (seconds)
    stabilize_time_sec: float = Field(0.0, alias="stabilizeTimeSec", ge=0.0)
    grow_time_sec: float = Field(0.0, alias="growTimeSec", ge=0.0)
    harvest_time_sec: float = Field(0.0, alias="harvestTimeSec", ge=0.0)

    # per-thread capacity cost of each stage's payload
    stabilize_cost: float = Field(1.75, alias="stabilizeCost", gt=0.0)
    grow_cost: float = Field(1.75, alias="growCost", gt=0.0)
    harvest_cost: float = Field(1.7, alias="harvestCost", gt=0.0)

    # fleet membership
    pool_nodes: List[str] = Field(default_factory=list, alias="poolNodes")
    other_nodes: List[str] = Field(default_factory=list, alias="otherNodes")
    core_count: int = Field(1, alias="coreCount", ge=1)

    @field_validator("target")
    @classmethod
    def _strip_target(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("target must not be blank")
        return v

    @field_validator("pool_nodes", "other_nodes")
    @classmethod
    def _clean_nodes(cls, v: List[str]) -> List[str]:
        return [s.strip() for s in v if s and s.strip()]

    def stage_cost(self, stage: str) -> float:
        return {
            "stabilize": self.stabilize_cost,
            "grow": self.grow_cost,
            "harvest": self.harvest_cost,
        }[stage]

    def stage_duration(self, stage: str) -> float:
        return {
            "stabilize": self.stabilize_time_sec,
            "grow": self.grow_time_sec,
            "harvest": self.harvest_time_sec,
        }[stage]

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, indent=2)


# --------------------------------------------------------------------------- #
# Read / write
# --------------------------------------------------------------------------- #


def parse_snapshot(text: str, *, source: str = "<memory>") -> TargetSnapshot:
    try:
        return TargetSnapshot.model_validate_json(text)
    except ValidationError as e:
        raise MissingInputError(f"snapshot {source} is invalid: {e.error_count()} error(s)") from e


def read_snapshot(data_dir: Path, target: str) -> TargetSnapshot:
    """Raise MissingInputError if the snapshot file is absent, empty or corrupt."""
    path = snapshot_path(data_dir, target)
    text = read_text_or_none(path)
    if text is None:
        raise MissingInputError(f"snapshot file {path} is empty or does not exist")
    snap = parse_snapshot(text, source=str(path))
    if snap.target != target:
        logger.warning("[snapshot] %s holds target=%s (expected %s)", path, snap.target, target)
    return snap


def write_snapshot(data_dir: Path, snapshot: TargetSnapshot) -> Path:
    """Producer side: persist one target record atomically."""
    path = snapshot_path(data_dir, snapshot.target)
    atomic_write_text(path, snapshot.to_json())
    logger.debug("[snapshot] wrote %s", path)
    return path


def list_snapshots(data_dir: Path) -> List[TargetSnapshot]:
    """Every readable snapshot under data_dir; corrupt files are skipped with a warning."""
    out: List[TargetSnapshot] = []
    base = Path(data_dir)
    if not base.is_dir():
        return out
    for path in sorted(base.glob(f"*{SNAPSHOT_SUFFIX}")):
        text = read_text_or_none(path)
        if text is None:
            continue
        try:
            out.append(parse_snapshot(text, source=str(path)))
        except MissingInputError as e:
            logger.warning("[snapshot] skipping %s", e)
    return out


# --------------------------------------------------------------------------- #
# Provider boundary
# --------------------------------------------------------------------------- #


class SnapshotProvider(Protocol):
    async def fetch(self, target: str) -> TargetSnapshot: ...


class FileSnapshotProvider:
    """
    Reads data/{target}-constants.json on every call. The external producer rewrites the
    file between cycles; nothing is cached here.
    """

    def __init__(self, data_dir: Path) -> None:
        self.data_dir = Path(data_dir)

    def exists(self, target: str) -> bool:
        return snapshot_path(self.data_dir, target).exists()

    async def fetch(self, target: str) -> TargetSnapshot:
        return await asyncio.to_thread(read_snapshot, self.data_dir, target)

