from __future__ import annotations

import asyncio
import dataclasses
from typing import List

import pytest

from batcher.models import WorkerNode
from components.snapshot_provider import TargetSnapshot


def make_snapshot(**overrides) -> TargetSnapshot:
    base = dict(
        target="alpha",
        defenseLevel=5.0,
        minDefense=5.0,
        value=1000.0,
        maxValue=1000.0,
        weakenEffectPerThread=0.05,
        harvestYieldPerThread=0.01,
        growthSecurityPerThread=0.004,
        harvestSecurityPerThread=0.002,
        growthRatePerThread=1.05,
        stabilizeTimeSec=4.0,
        growTimeSec=3.2,
        harvestTimeSec=1.0,
        stabilizeCost=1.75,
        growCost=1.75,
        harvestCost=1.7,
        poolNodes=["pool-0", "pool-1"],
        otherNodes=[],
    )
    base.update(overrides)
    return TargetSnapshot.model_validate(base)


class FakeClock:
    """Monotonic clock advanced only by FakeSleeper."""

    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class FakeSleeper:
    """
    Records every requested delay and advances the clock instead of waiting.
    Cancels the caller after `limit` sleeps so run_forever() can be observed.
    """

    def __init__(self, clock: FakeClock, limit: int | None = None) -> None:
        self.clock = clock
        self.limit = limit
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(float(seconds))
        self.clock.now += max(0.0, float(seconds))
        if self.limit is not None and len(self.calls) >= self.limit:
            raise asyncio.CancelledError()
        await asyncio.sleep(0)


class StaticProvider:
    """Snapshot provider returning a scripted sequence (last one repeats)."""

    def __init__(self, *snaps: TargetSnapshot) -> None:
        self.snaps = list(snaps)
        self.fetches = 0

    async def fetch(self, target: str) -> TargetSnapshot:
        self.fetches += 1
        idx = min(self.fetches - 1, len(self.snaps) - 1)
        return self.snaps[idx]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def nodes() -> List[WorkerNode]:
    return [
        WorkerNode("home", total_capacity=32.0),
        WorkerNode("pool-0", total_capacity=16.0),
        WorkerNode("pool-1", total_capacity=16.0),
    ]


@pytest.fixture
def cfg(tmp_path):
    from batcher.config import load_config

    return dataclasses.replace(
        load_config(),
        data_dir=tmp_path / "data",
        log_dir=tmp_path / "logs",
        nodes_root=tmp_path / "nodes",
        home_node="home",
        excluded_node_prefixes=("mgmt",),
        alloc_retry_attempts=3,
        alloc_retry_initial_delay_ms=1000,
        alloc_retry_max_delay_ms=8000,
        alloc_retry_jitter_ms=0,
        completion_poll_ms=250,
        stage_overrun_factor=1.5,
        work_log_enabled=True,
    )
