import asyncio
import dataclasses
import json
import logging
import threading

import pytest

from batcher.controller import SKIP_MISSING_SNAPSHOT, SKIP_NOTHING_TO_DO, CycleController
from batcher.dispatcher import Dispatcher
from batcher.models import SLOT_HARVEST, SLOT_STABILIZE_1, SLOT_STABILIZE_2, Job, JobFragment, WorkerNode
from batcher.utils import MissingInputError
from batcher.variants import get_variant
from components.executors import SimulatedExecutor
from components.fleet import Fleet
from extensions.logging import LoggingExtension
from extensions.work_log import WorkLog

from conftest import FakeSleeper, StaticProvider, make_snapshot


class MissingProvider:
    async def fetch(self, target):
        raise MissingInputError(f"no snapshot for {target}")


class StuckExecutor(SimulatedExecutor):
    def is_running(self, handle):
        return True


def _controller(provider, nodes, clock, cfg, *, mode="batch", sleeper=None, executor=None, lock=None, work_log=None):
    executor = executor or SimulatedExecutor(
        clock=clock, capacity={n.node_id: n.total_capacity for n in nodes}
    )
    fleet = Fleet.from_nodes(nodes, executor)
    sleeper = sleeper or FakeSleeper(clock)
    ctl = CycleController(
        "alpha",
        provider=provider,
        fleet=fleet,
        dispatcher=Dispatcher(executor, "stage_job.py"),
        variant=get_variant(mode),
        cfg=cfg,
        lock=lock,
        work_log=work_log,
        sleep=sleeper,
        clock=clock,
    )
    return ctl, executor, sleeper


@pytest.mark.asyncio
async def test_harvest_cycle_dispatches_slots_in_order(nodes, clock, cfg):
    ctl, executor, sleeper = _controller(StaticProvider(make_snapshot()), nodes, clock, cfg)

    report = await ctl.run_cycle()

    assert report.plan_mode == "harvest"
    assert report.dispatched_slots == [SLOT_STABILIZE_2, SLOT_HARVEST]
    assert [h.stage for h in executor.launched] == ["stabilize", "harvest", "harvest"]
    # corrective stabilize lands on home first, harvest spills into the pool
    assert report.stages[0].nodes == (("home", 1),)
    assert report.stages[1].nodes == (("home", 17), ("pool-0", 8))
    assert report.started_threads == 26
    # one step delay between the two slots, then the fixed completion window
    assert sleeper.calls == [pytest.approx(0.05), pytest.approx(0.2)]


@pytest.mark.asyncio
async def test_zero_slots_are_never_dispatched(nodes, clock, cfg):
    ctl, executor, _ = _controller(
        StaticProvider(make_snapshot(harvestYieldPerThread=0.0)), nodes, clock, cfg
    )

    report = await ctl.run_cycle()

    assert report.skipped == SKIP_NOTHING_TO_DO
    assert all(h.stage != "harvest" for h in executor.launched)
    assert executor.launched == []


@pytest.mark.asyncio
async def test_idle_plans_keep_looping_forever(nodes, clock, cfg):
    provider = StaticProvider(make_snapshot(harvestYieldPerThread=0.0))
    sleeper = FakeSleeper(clock, limit=5)
    ctl, executor, _ = _controller(provider, nodes, clock, cfg, sleeper=sleeper)

    with pytest.raises(asyncio.CancelledError):
        await ctl.run_forever()

    # one fresh snapshot and one idle wait per cycle, no terminal state reached
    assert provider.fetches == 5
    assert ctl.cycles == 5
    assert sleeper.calls == [pytest.approx(0.5)] * 5
    assert executor.launched == []


@pytest.mark.asyncio
async def test_each_cycle_reads_a_fresh_snapshot(nodes, clock, cfg):
    provider = StaticProvider(
        make_snapshot(defenseLevel=20.0),
        make_snapshot(),
    )
    ctl, _, _ = _controller(provider, nodes, clock, cfg)

    first = await ctl.run_cycle()
    second = await ctl.run_cycle()

    assert first.plan_mode == "stabilize"
    assert first.dispatched_slots == [SLOT_STABILIZE_1]
    assert second.plan_mode == "harvest"


@pytest.mark.asyncio
async def test_missing_snapshot_skips_cycle_without_raising(nodes, clock, cfg):
    ctl, executor, sleeper = _controller(MissingProvider(), nodes, clock, cfg)

    report = await ctl.run_cycle()

    assert report.skipped == SKIP_MISSING_SNAPSHOT
    assert sleeper.calls == [pytest.approx(0.5)]
    assert executor.launched == []


@pytest.mark.asyncio
async def test_exhausted_stage_is_retried_with_bounded_backoff(clock, cfg):
    full = [WorkerNode("home", 8.0, used_capacity=8.0), WorkerNode("pool-0", 1.0)]
    snap = make_snapshot(defenseLevel=20.0)
    ctl, executor, sleeper = _controller(StaticProvider(snap), full, clock, cfg)

    report = await ctl.run_cycle()

    stage = report.stages[0]
    assert stage.slot == SLOT_STABILIZE_1
    assert stage.status == "exhausted"
    assert stage.started == 0
    assert stage.attempts == cfg.alloc_retry_attempts == 3
    # two backoff waits (1s, 2s), then the idle wait because nothing started
    assert sleeper.calls == [pytest.approx(1.0), pytest.approx(2.0), pytest.approx(0.5)]
    assert executor.launched == []


@pytest.mark.asyncio
async def test_retry_succeeds_once_capacity_frees_up(clock, cfg):
    nodes = [WorkerNode("home", 8.0)]
    executor = SimulatedExecutor(clock=clock, capacity={"home": 8.0})
    executor.place("stage_job.py", "home")
    # a job from another target holds 7.0 of 8.0 until t=1.5
    foreign = Job(slot=SLOT_STABILIZE_1, target="other", requested_threads=4, per_thread_cost=1.75, duration_sec=1.5)
    assert executor.launch("stage_job.py", JobFragment(foreign, "home", 4)) is not None

    ctl, _, _ = _controller(
        StaticProvider(make_snapshot(defenseLevel=20.0)), nodes, clock, cfg, executor=executor
    )

    report = await ctl.run_cycle()

    stage = report.stages[0]
    assert stage.attempts == 3
    assert stage.started == 4
    assert stage.status == "partial"


@pytest.mark.asyncio
async def test_shared_lock_prevents_over_commit(clock, cfg):
    nodes = [WorkerNode("home", 20.0), WorkerNode("pool-0", 10.0)]
    executor = SimulatedExecutor(clock=clock, capacity={n.node_id: n.total_capacity for n in nodes})
    lock = asyncio.Lock()
    snap_a = make_snapshot(target="a", defenseLevel=20.0)
    snap_b = make_snapshot(target="b", defenseLevel=20.0)
    cfg = dataclasses.replace(cfg, alloc_retry_attempts=1)

    ctl_a, _, _ = _controller(StaticProvider(snap_a), nodes, clock, cfg, executor=executor, lock=lock)
    ctl_b, _, _ = _controller(StaticProvider(snap_b), nodes, clock, cfg, executor=executor, lock=lock)

    rep_a, rep_b = await asyncio.gather(ctl_a.run_cycle(), ctl_b.run_cycle())

    # per-node floor: 11 threads fit on home, 5 on pool-0
    assert rep_a.started_threads + rep_b.started_threads == 16
    for node in nodes:
        held = sum(h.capacity for h in executor.launched if h.node_id == node.node_id)
        assert held <= node.total_capacity + 1e-9
    # no launch was refused for lack of capacity
    assert sum(h.threads for h in executor.launched) == 16


@pytest.mark.asyncio
async def test_formulas_variant_waits_half_the_shortest_stage(nodes, clock, cfg):
    ctl, _, sleeper = _controller(StaticProvider(make_snapshot()), nodes, clock, cfg, mode="formulas")

    await ctl.run_cycle()

    # no step offsets; harvest (1.0s) is the shortest stage
    assert sleeper.calls == [pytest.approx(0.5)]


@pytest.mark.asyncio
async def test_sequential_variant_waits_for_each_stage(nodes, clock, cfg):
    ctl, _, sleeper = _controller(StaticProvider(make_snapshot()), nodes, clock, cfg, mode="sequential")

    report = await ctl.run_cycle()

    # 10% harvest share
    assert report.stages[1].requested == 10
    # stabilize runs 4s, step delay, harvest runs 1s, completion window
    assert sleeper.calls == [
        pytest.approx(4.0),
        pytest.approx(0.1),
        pytest.approx(1.0),
        pytest.approx(0.1),
    ]
    assert not any(s.overrun for s in report.stages)


@pytest.mark.asyncio
async def test_stage_overrun_is_logged_and_cycle_proceeds(clock, cfg, caplog):
    nodes = [WorkerNode("home", 64.0)]
    executor = StuckExecutor(clock=clock)
    snap = make_snapshot(defenseLevel=20.0, stabilizeTimeSec=1.0)
    ctl, _, sleeper = _controller(StaticProvider(snap), nodes, clock, cfg, mode="sequential", executor=executor)

    report = await ctl.run_cycle()

    assert report.stages[0].overrun is True
    # 1.0s estimate, then 0.25s polls until 1.5s, then the completion window
    assert sleeper.calls == [
        pytest.approx(1.0),
        pytest.approx(0.25),
        pytest.approx(0.25),
        pytest.approx(0.1),
    ]
    assert any("still running" in r.getMessage() for r in caplog.records)


@pytest.mark.asyncio
async def test_failing_cycle_does_not_stop_the_loop(nodes, clock, cfg):
    class FlakyProvider:
        def __init__(self):
            self.calls = 0

        async def fetch(self, target):
            self.calls += 1
            if self.calls == 1:
                raise RuntimeError("boom")
            return make_snapshot(harvestYieldPerThread=0.0)

    provider = FlakyProvider()
    sleeper = FakeSleeper(clock, limit=3)
    ctl, _, _ = _controller(provider, nodes, clock, cfg, sleeper=sleeper)

    with pytest.raises(asyncio.CancelledError):
        await ctl.run_forever()

    assert provider.calls == 3


@pytest.mark.asyncio
async def test_cycle_summary_goes_to_work_log(tmp_path, nodes, clock, cfg):
    work_log = WorkLog(tmp_path / "work-log.jsonl")
    ctl, _, _ = _controller(StaticProvider(make_snapshot()), nodes, clock, cfg, work_log=work_log)

    await ctl.run_cycle()
    await ctl.run_cycle()

    lines = (tmp_path / "work-log.jsonl").read_text(encoding="utf-8").splitlines()
    records = [json.loads(line) for line in lines]
    assert [r["cycle"] for r in records] == [1, 2]
    assert records[0]["event"] == "cycle"
    assert records[0]["target"] == "alpha"
    assert [s["slot"] for s in records[0]["stages"]] == [SLOT_STABILIZE_2, SLOT_HARVEST]


@pytest.mark.asyncio
async def test_refused_launches_are_reported_as_exhausted(nodes, clock, cfg, caplog):
    # capacity is there on paper, but every node refuses to start the job
    executor = SimulatedExecutor(clock=clock, refuse_nodes=[n.node_id for n in nodes])
    snap = make_snapshot(defenseLevel=20.0)
    cfg = dataclasses.replace(cfg, alloc_retry_attempts=1)
    ctl, _, _ = _controller(StaticProvider(snap), nodes, clock, cfg, executor=executor)

    with caplog.at_level(logging.INFO):
        report = await ctl.run_cycle()

    stage = report.stages[0]
    assert stage.status == "exhausted"
    assert stage.started == 0
    alloc_records = [r for r in caplog.records if r.getMessage().startswith("[alloc]")]
    assert [r.levelno for r in alloc_records] == [logging.ERROR]
    assert "could not start any threads" in alloc_records[0].getMessage()


@pytest.mark.asyncio
async def test_partially_refused_launch_is_a_warning(clock, cfg, caplog):
    nodes = [WorkerNode("home", 8.0), WorkerNode("pool-0", 1000.0)]
    executor = SimulatedExecutor(clock=clock, refuse_nodes=["home"])
    cfg = dataclasses.replace(cfg, alloc_retry_attempts=1)
    ctl, _, _ = _controller(StaticProvider(make_snapshot(defenseLevel=20.0)), nodes, clock, cfg, executor=executor)

    with caplog.at_level(logging.INFO):
        report = await ctl.run_cycle()

    # 4 threads were allocated on home but refused; 296 started on pool-0
    assert report.stages[0].status == "partial"
    assert report.stages[0].started == 296
    alloc_records = [r for r in caplog.records if r.getMessage().startswith("[alloc]")]
    assert [r.levelno for r in alloc_records] == [logging.WARNING]


@pytest.mark.asyncio
async def test_stage_placement_runs_off_the_event_loop(nodes, clock, cfg):
    class ThreadRecordingExecutor(SimulatedExecutor):
        def __init__(self, **kw):
            super().__init__(**kw)
            self.launch_threads = set()

        def launch(self, payload_id, fragment):
            self.launch_threads.add(threading.get_ident())
            return super().launch(payload_id, fragment)

    executor = ThreadRecordingExecutor(clock=clock)
    ctl, _, _ = _controller(StaticProvider(make_snapshot()), nodes, clock, cfg, executor=executor)

    report = await ctl.run_cycle()

    assert report.started_threads == 26
    assert executor.launch_threads
    assert threading.get_ident() not in executor.launch_threads


@pytest.mark.asyncio
async def test_direct_cycle_logs_reach_the_target_file(tmp_path, nodes, clock, cfg):
    log_ext = LoggingExtension(tmp_path / "logs", global_level=logging.INFO, console=False)
    try:
        log_ext.get_target_logger("alpha")
        ctl, _, _ = _controller(StaticProvider(make_snapshot()), nodes, clock, cfg)

        await ctl.run_cycle()
    finally:
        log_ext.close()

    text = (tmp_path / "logs" / "targets" / "alpha.log").read_text(encoding="utf-8")
    # dispatch lines are logged from the worker thread
    assert "[dispatch] started harvest" in text
    assert "[alloc] started 25 threads for harvest" in text
