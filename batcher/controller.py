from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from tenacity import AsyncRetrying, retry_if_result, stop_after_attempt, wait_exponential_jitter

from components.fleet import FleetInventory, candidate_order
from components.snapshot_provider import SnapshotProvider, TargetSnapshot
from extensions.logging import LoggingExtension, current_target
from extensions.work_log import WorkLog

from .allocator import allocate, log_allocation_outcome
from .config import Config
from .dispatcher import DispatchOutcome, Dispatcher
from .models import Job, ProcessHandle
from .planner import BatchPlan, compute_plan
from .utils import MissingInputError
from .variants import BatchVariant

logger = logging.getLogger(__name__)
if not logger.handlers:
    logger.addHandler(logging.NullHandler())

Sleep = Callable[[float], Awaitable[Any]]

SKIP_MISSING_SNAPSHOT = "missing_snapshot"
SKIP_NOTHING_TO_DO = "nothing_to_do"


# --------------------------------------------------------------------------- #
# Reports
# --------------------------------------------------------------------------- #


@dataclass(frozen=True)
class StageReport:
    slot: str
    requested: int
    started: int
    status: str
    attempts: int
    nodes: Tuple[Tuple[str, int], ...] = ()
    overrun: bool = False


@dataclass
class CycleReport:
    target: str
    index: int
    variant: str
    plan_mode: Optional[str] = None
    flags: Tuple[str, ...] = ()
    stages: List[StageReport] = field(default_factory=list)
    skipped: Optional[str] = None
    waited_sec: float = 0.0

    @property
    def started_threads(self) -> int:
        return sum(s.started for s in self.stages)

    @property
    def dispatched_slots(self) -> List[str]:
        return [s.slot for s in self.stages if s.started > 0]

    def to_record(self) -> Dict[str, Any]:
        return {
            "target": self.target,
            "cycle": self.index,
            "variant": self.variant,
            "plan_mode": self.plan_mode,
            "flags": list(self.flags),
            "skipped": self.skipped,
            "stages": [
                {
                    "slot": s.slot,
                    "requested": s.requested,
                    "started": s.started,
                    "status": s.status,
                    "attempts": s.attempts,
                    "nodes": [list(n) for n in s.nodes],
                    "overrun": s.overrun,
                }
                for s in self.stages
            ],
            "waited_sec": round(self.waited_sec, 3),
        }


# --------------------------------------------------------------------------- #
# Controller
# --------------------------------------------------------------------------- #


class CycleController:
    """
    Repeating batch loop for one target:

        snapshot -> plan -> dispatch slot -> step delay -> dispatch slot ... -> completion window

    Every cycle reads a fresh snapshot. Nothing ends the loop except cancellation;
    a cycle that fails is logged and the next one starts after the idle delay.

    ``lock`` is shared by every controller drawing on the same fleet so that
    capacity is read and committed by one controller at a time.
    """

    def __init__(
        self,
        target: str,
        *,
        provider: SnapshotProvider,
        fleet: FleetInventory,
        dispatcher: Dispatcher,
        variant: BatchVariant,
        cfg: Config,
        lock: Optional[asyncio.Lock] = None,
        work_log: Optional[WorkLog] = None,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.target = target
        self.provider = provider
        self.fleet = fleet
        self.dispatcher = dispatcher
        self.variant = variant
        self.cfg = cfg
        self.lock = lock if lock is not None else asyncio.Lock()
        self.work_log = work_log
        self._sleep = sleep
        self._clock = clock
        self.cycles = 0
        self.last_report: Optional[CycleReport] = None

    # ---------- loop ----------

    async def run_forever(self) -> None:
        token = LoggingExtension.set_target_context(self.target)
        logger.info("[cycle] %s: starting %s loop", self.target, self.variant.name)
        try:
            while True:
                try:
                    await self.run_cycle()
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.exception("[cycle] %s: cycle %d failed: %s", self.target, self.cycles, e)
                    await self._sleep(self.variant.idle_delay_sec)
        finally:
            logger.info("[cycle] %s: loop stopped after %d cycle(s)", self.target, self.cycles)
            LoggingExtension.reset_target_context(token)

    async def run_cycle(self) -> CycleReport:
        # callers outside run_forever still get per-target log routing
        if current_target() == self.target:
            return await self._cycle()
        token = LoggingExtension.set_target_context(self.target)
        try:
            return await self._cycle()
        finally:
            LoggingExtension.reset_target_context(token)

    async def _cycle(self) -> CycleReport:
        self.cycles += 1
        report = CycleReport(target=self.target, index=self.cycles, variant=self.variant.name)
        self.last_report = report

        try:
            snap = await self.provider.fetch(self.target)
        except MissingInputError as e:
            logger.error("[cycle] %s: %s; skipping cycle", self.target, e)
            report.skipped = SKIP_MISSING_SNAPSHOT
            report.waited_sec = await self._wait(self.variant.idle_delay_sec)
            self._record(report)
            return report

        plan = compute_plan(snap, self.variant.policy)
        report.plan_mode = plan.mode
        report.flags = plan.flags

        if plan.is_empty:
            logger.info("[cycle] %s: nothing to dispatch (mode=%s); idling", self.target, plan.mode)
            report.skipped = SKIP_NOTHING_TO_DO
            report.waited_sec = await self._wait(self.variant.idle_delay_sec)
            self._record(report)
            return report

        await self._dispatch_plan(snap, plan, report)

        window = self.variant.completion_window(snap)
        if report.started_threads <= 0 or window <= 0:
            window = max(window, self.variant.idle_delay_sec)
        report.waited_sec += await self._wait(window)
        self._record(report)
        return report

    # ---------- stages ----------

    async def _dispatch_plan(self, snap: TargetSnapshot, plan: BatchPlan, report: CycleReport) -> None:
        candidates = candidate_order(
            snap,
            home_node=self.cfg.home_node,
            excluded_prefixes=self.cfg.excluded_node_prefixes,
        )
        dispatched = 0
        for job in plan.jobs:
            if dispatched and self.variant.step_delay_sec > 0:
                report.waited_sec += await self._wait(self.variant.step_delay_sec)

            outcome, attempts = await self._run_stage(job, candidates)
            log_allocation_outcome(job, outcome.status, outcome.started, len(outcome.handles), logger)
            if outcome.failed:
                logger.warning(
                    "[cycle] %s: %d fragment(s) of %s failed to start",
                    self.target, len(outcome.failed), job.slot,
                )

            overrun = False
            if outcome.handles:
                dispatched += 1
                if self.variant.await_completion:
                    overrun = not await self._await_completion(job, outcome.handles)

            report.stages.append(
                StageReport(
                    slot=job.slot,
                    requested=job.requested_threads,
                    started=outcome.started,
                    status=outcome.status,
                    attempts=attempts,
                    nodes=tuple((h.node_id, h.threads) for h in outcome.handles),
                    overrun=overrun,
                )
            )

    async def _run_stage(self, job: Job, candidates: Sequence[str]) -> Tuple[DispatchOutcome, int]:
        """
        Allocate and dispatch one job, retrying with backoff only while nothing starts.
        A partial start is accepted as is; after the last attempt the exhausted outcome
        is returned rather than raised.
        """
        cfg = self.cfg
        retrying = AsyncRetrying(
            stop=stop_after_attempt(cfg.alloc_retry_attempts),
            wait=wait_exponential_jitter(
                initial=cfg.alloc_retry_initial_delay_ms / 1000.0,
                max=cfg.alloc_retry_max_delay_ms / 1000.0,
                jitter=cfg.alloc_retry_jitter_ms / 1000.0,
            ),
            retry=retry_if_result(lambda o: o.started <= 0 and o.allocation.requested > 0),
            retry_error_callback=lambda state: state.outcome.result(),
            before_sleep=self._log_retry,
            sleep=self._sleep,
        )
        attempts = 0

        async def _attempt() -> DispatchOutcome:
            nonlocal attempts
            attempts += 1
            async with self.lock:
                return await asyncio.to_thread(self._place_stage, job, candidates)

        outcome = await retrying(_attempt)
        return outcome, attempts

    def _place_stage(self, job: Job, candidates: Sequence[str]) -> DispatchOutcome:
        # runs off the event loop; payload copies and process starts block
        nodes = self.fleet.view(candidates)
        allocation = allocate(job, nodes)
        return self.dispatcher.dispatch(allocation)

    def _log_retry(self, state) -> None:
        delay = state.next_action.sleep if state.next_action else 0.0
        logger.warning(
            "[cycle] %s: no capacity for stage (attempt %d/%d); retrying in %.2fs",
            self.target, state.attempt_number, self.cfg.alloc_retry_attempts, delay,
        )

    async def _await_completion(self, job: Job, handles: Sequence[ProcessHandle]) -> bool:
        """
        Wait for every handle of a stage to finish. Gives up after the stage estimate
        times the overrun factor; returns False in that case.
        """
        executor = self.dispatcher.executor
        poll = self.cfg.completion_poll_ms / 1000.0
        budget = max(job.duration_sec * self.cfg.stage_overrun_factor, poll)
        start = self._clock()

        if job.duration_sec > 0:
            await self._sleep(job.duration_sec)
        while any(executor.is_running(h) for h in handles):
            elapsed = self._clock() - start
            if elapsed >= budget:
                logger.warning(
                    "[cycle] %s: %s still running after %.1fs (estimate %.1fs); moving on",
                    self.target, job.slot, elapsed, job.duration_sec,
                )
                return False
            await self._sleep(poll)
        return True

    # ---------- helpers ----------

    async def _wait(self, seconds: float) -> float:
        seconds = max(0.0, float(seconds))
        await self._sleep(seconds)
        return seconds

    def _record(self, report: CycleReport) -> None:
        if self.work_log is not None:
            self.work_log.record("cycle", report.to_record())
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("[cycle] %s: report %s", self.target, report.to_record())
