from __future__ import annotations

import logging
import math
import time
from pathlib import Path
from typing import Iterable, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from batcher.config import MAX_TARGET_COUNT, MIN_TARGET_COUNT
from batcher.utils import MissingInputError, atomic_write_text, clamp, read_text_or_none
from components.snapshot_provider import TargetSnapshot, list_snapshots
from extensions.output_paths import ranking_path

logger = logging.getLogger(__name__)
if not logger.handlers:
    logger.addHandler(logging.NullHandler())


class RankedTarget(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    target: str
    score: float
    max_value: float = Field(..., alias="maxValue")
    harvest_time_sec: float = Field(..., alias="harvestTimeSec")


class RankingFile(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    generated_at: float = Field(0.0, alias="generatedAt")
    targets: List[RankedTarget] = Field(default_factory=list)


def score_target(snap: TargetSnapshot) -> Optional[float]:
    """Ceiling value per second of harvest time; None when the target is not worth scheduling."""
    if snap.max_value <= 0 or snap.harvest_time_sec <= 0:
        return None
    return snap.max_value / snap.harvest_time_sec


def rank_targets(snapshots: Iterable[TargetSnapshot], count: int) -> List[RankedTarget]:
    count = clamp(int(count), MIN_TARGET_COUNT, MAX_TARGET_COUNT)
    ranked: List[RankedTarget] = []
    empty: List[str] = []
    for snap in snapshots:
        score = score_target(snap)
        if score is None:
            empty.append(snap.target)
            continue
        ranked.append(
            RankedTarget(
                target=snap.target,
                score=score,
                max_value=snap.max_value,
                harvest_time_sec=snap.harvest_time_sec,
            )
        )
    if empty:
        logger.info("[rank] skipping %d target(s) with no value: %s", len(empty), ", ".join(sorted(empty)))
    ranked.sort(key=lambda r: (-r.score, r.target))
    return ranked[:count]


def write_rankings(data_dir: Path, ranked: List[RankedTarget]) -> Path:
    path = ranking_path(data_dir)
    data = RankingFile(generated_at=round(time.time(), 3), targets=list(ranked))
    atomic_write_text(path, data.model_dump_json(by_alias=True, indent=2))
    return path


def read_rankings(data_dir: Path) -> List[RankedTarget]:
    path = ranking_path(data_dir)
    text = read_text_or_none(path)
    if text is None:
        raise MissingInputError(f"ranking file {path} is empty or does not exist")
    try:
        return RankingFile.model_validate_json(text).targets
    except ValidationError as e:
        raise MissingInputError(f"ranking file {path} is invalid: {e.error_count()} error(s)") from e


def refresh_rankings(data_dir: Path, count: int) -> List[RankedTarget]:
    """Re-score every snapshot in data_dir and persist the top `count` targets."""
    ranked = rank_targets(list_snapshots(data_dir), count)
    write_rankings(data_dir, ranked)
    logger.info(
        "[rank] top %d target(s): %s",
        len(ranked), ", ".join(r.target for r in ranked) or "-",
    )
    return ranked


def target_count_for_level(
    level: int,
    min_targets: int = 10,
    max_targets: int = MAX_TARGET_COUNT,
    max_level: int = 1000,
) -> int:
    """Linear ramp from min_targets at level 0 to max_targets at max_level."""
    if level >= max_level:
        return max_targets
    # round half up
    n = math.floor(min_targets + (max_targets - min_targets) / max_level * max(0, level) + 0.5)
    return clamp(n, MIN_TARGET_COUNT, max_targets)
