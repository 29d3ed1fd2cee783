from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from .controller import CycleController

logger = logging.getLogger(__name__)
if not logger.handlers:
    logger.addHandler(logging.NullHandler())

ControllerFactory = Callable[[str], CycleController]
TargetSource = Callable[[], Awaitable[List[str]]]
Sleep = Callable[[float], Awaitable[object]]


class TargetSupervisor:
    """
    Keeps one controller task per selected target.

    The target list is re-read every ``refresh_seconds``: new targets get a controller,
    targets that dropped out have theirs cancelled. All controllers are built by
    ``make_controller`` and are expected to share one fleet and one allocation lock.
    """

    def __init__(
        self,
        *,
        make_controller: ControllerFactory,
        select_targets: TargetSource,
        refresh_seconds: float,
        sleep: Sleep = asyncio.sleep,
        on_stopped: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.make_controller = make_controller
        self.select_targets = select_targets
        self.refresh_seconds = max(0.0, float(refresh_seconds))
        self._sleep = sleep
        self._on_stopped = on_stopped
        self.inflight_by_target: Dict[str, asyncio.Task] = {}
        self.controllers: Dict[str, CycleController] = {}

    # ---------- reconcile ----------

    def _reap(self) -> None:
        finished = [t for t, task in self.inflight_by_target.items() if task.done()]
        for target in finished:
            task = self.inflight_by_target.pop(target)
            self.controllers.pop(target, None)
            if task.cancelled():
                continue
            exc = task.exception()
            if exc is not None:
                logger.error("[supervisor] controller for %s died: %r", target, exc)
            if self._on_stopped is not None:
                self._on_stopped(target)

    async def reconcile(self, targets: Sequence[str]) -> Tuple[List[str], List[str]]:
        """Start controllers for new targets, cancel the ones not in `targets`."""
        self._reap()
        wanted = list(dict.fromkeys(t for t in targets if t))

        stopped: List[str] = []
        for target in list(self.inflight_by_target):
            if target in wanted:
                continue
            task = self.inflight_by_target.pop(target)
            self.controllers.pop(target, None)
            task.cancel(f"stop:dropped:{target}")
            await asyncio.gather(task, return_exceptions=True)
            stopped.append(target)
            if self._on_stopped is not None:
                self._on_stopped(target)

        started: List[str] = []
        for target in wanted:
            if target in self.inflight_by_target:
                continue
            controller = self.make_controller(target)
            self.controllers[target] = controller
            self.inflight_by_target[target] = asyncio.create_task(
                controller.run_forever(), name=f"target:{target}"
            )
            started.append(target)

        if started or stopped:
            logger.info(
                "[supervisor] running=%d started=%s stopped=%s",
                len(self.inflight_by_target), started or "-", stopped or "-",
            )
        return started, stopped

    # ---------- loop ----------

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> None:
        stop_event = stop_event or asyncio.Event()
        try:
            while not stop_event.is_set():
                try:
                    targets = await self.select_targets()
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.error("[supervisor] target selection failed: %s; keeping current set", e)
                    targets = list(self.inflight_by_target)
                await self.reconcile(targets)
                if not self.inflight_by_target:
                    logger.warning("[supervisor] no targets selected; waiting for the next refresh")
                await self._wait_or_stop(stop_event, self.refresh_seconds)
        finally:
            await self.stop()

    async def _wait_or_stop(self, stop_event: asyncio.Event, seconds: float) -> None:
        sleeper = asyncio.ensure_future(self._sleep(seconds))
        stopper = asyncio.ensure_future(stop_event.wait())
        try:
            await asyncio.wait({sleeper, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for f in (sleeper, stopper):
                if not f.done():
                    f.cancel()

    async def stop(self) -> None:
        tasks = list(self.inflight_by_target.values())
        for task in tasks:
            if not task.done():
                task.cancel("stop:final")
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        for target in list(self.inflight_by_target):
            if self._on_stopped is not None:
                self._on_stopped(target)
        self.inflight_by_target.clear()
        self.controllers.clear()
