from __future__ import annotations

import itertools
import logging
import shutil
import subprocess
import sys
import time
from collections import defaultdict
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Protocol, Set, Tuple

import psutil

from batcher.models import JobFragment, ProcessHandle
from extensions.output_paths import ensure_node_dir

logger = logging.getLogger(__name__)
if not logger.handlers:
    logger.addHandler(logging.NullHandler())


class JobExecutor(Protocol):
    """
    Boundary to the job-execution facility.

    place()     copy a payload onto a node; idempotent, no-op when already present.
    launch()    start one fragment; None when the facility refuses.
    committed() capacity currently held on a node by jobs this executor started.
    """

    def place(self, payload_id: str, node_id: str, *, force: bool = False) -> bool: ...

    def launch(self, payload_id: str, fragment: JobFragment) -> Optional[ProcessHandle]: ...

    def is_running(self, handle: ProcessHandle) -> bool: ...

    def committed(self, node_id: str) -> float: ...

    def kill_all(self, node_id: str) -> int: ...


# --------------------------------------------------------------------------- #
# In-memory facility
# --------------------------------------------------------------------------- #


class SimulatedExecutor:
    """
    In-memory facility: a launched fragment holds its capacity until its stage
    duration has elapsed on ``clock``. Used by --simulate and by the tests.

    ``capacity`` (optional) makes launch() refuse fragments that would over-commit a node,
    the way a real facility refuses to start a process without memory.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.monotonic,
        capacity: Optional[Mapping[str, float]] = None,
        refuse_nodes: Iterable[str] = (),
    ) -> None:
        self._clock = clock
        self._capacity = dict(capacity or {})
        self._refuse = set(refuse_nodes)
        self._placed: Set[Tuple[str, str]] = set()
        self._jobs: Dict[str, List[ProcessHandle]] = defaultdict(list)
        self._pids = itertools.count(1)
        self.copies = 0
        self.launched: List[ProcessHandle] = []

    def place(self, payload_id: str, node_id: str, *, force: bool = False) -> bool:
        key = (payload_id, node_id)
        if key in self._placed and not force:
            return True
        self._placed.add(key)
        self.copies += 1
        return True

    def is_placed(self, payload_id: str, node_id: str) -> bool:
        return (payload_id, node_id) in self._placed

    def launch(self, payload_id: str, fragment: JobFragment) -> Optional[ProcessHandle]:
        node = fragment.node_id
        if (payload_id, node) not in self._placed or node in self._refuse:
            return None
        limit = self._capacity.get(node)
        if limit is not None and self.committed(node) + fragment.capacity > limit + 1e-9:
            return None
        now = self._clock()
        handle = ProcessHandle(
            node_id=node,
            pid=next(self._pids),
            stage=fragment.job.stage,
            threads=fragment.threads,
            capacity=fragment.capacity,
            started_at=now,
            expires_at=now + max(0.0, fragment.job.duration_sec),
        )
        self._jobs[node].append(handle)
        self.launched.append(handle)
        return handle

    def is_running(self, handle: ProcessHandle) -> bool:
        if handle not in self._jobs.get(handle.node_id, ()):
            return False
        return handle.expires_at is None or self._clock() < handle.expires_at

    def committed(self, node_id: str) -> float:
        now = self._clock()
        live = [h for h in self._jobs.get(node_id, ()) if h.expires_at is None or now < h.expires_at]
        self._jobs[node_id] = live
        return sum(h.capacity for h in live)

    def kill_all(self, node_id: str) -> int:
        killed = len(self._jobs.get(node_id, ()))
        self._jobs[node_id] = []
        return killed


# --------------------------------------------------------------------------- #
# Local-process facility
# --------------------------------------------------------------------------- #


class LocalProcessExecutor:
    """
    Each worker node is a directory under ``nodes_root``; placing a payload copies the
    script there and launching runs it as a child process. Liveness and termination go
    through psutil.
    """

    def __init__(
        self,
        nodes_root: Path,
        payload_dir: Path,
        *,
        python: str = sys.executable,
    ) -> None:
        self.nodes_root = Path(nodes_root)
        self.payload_dir = Path(payload_dir)
        self.python = python
        self._live: Dict[str, List[ProcessHandle]] = defaultdict(list)
        self._popen: Dict[int, subprocess.Popen] = {}

    # ---------- placement ----------

    def place(self, payload_id: str, node_id: str, *, force: bool = False) -> bool:
        src = self.payload_dir / payload_id
        if not src.is_file():
            logger.error("[exec] payload %s not found in %s", payload_id, self.payload_dir)
            return False
        dst = ensure_node_dir(self.nodes_root, node_id) / payload_id
        try:
            if not force and dst.is_file() and dst.read_bytes() == src.read_bytes():
                return True
            shutil.copy2(src, dst)
        except OSError as e:
            logger.error("[exec] failed to copy %s to %s: %s", payload_id, node_id, e)
            return False
        logger.debug("[exec] copied %s to %s", payload_id, node_id)
        return True

    # ---------- launch ----------

    def launch(self, payload_id: str, fragment: JobFragment) -> Optional[ProcessHandle]:
        node_dir = ensure_node_dir(self.nodes_root, fragment.node_id)
        script = node_dir / payload_id
        job = fragment.job
        cmd = [
            self.python,
            str(script),
            job.stage,
            job.target,
            "--threads",
            str(fragment.threads),
            "--duration",
            f"{max(0.0, job.duration_sec):.3f}",
        ]
        try:
            proc = subprocess.Popen(
                cmd,
                cwd=str(node_dir),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as e:
            logger.error("[exec] failed to start %s on %s: %s", payload_id, fragment.node_id, e)
            return None

        handle = ProcessHandle(
            node_id=fragment.node_id,
            pid=proc.pid,
            stage=job.stage,
            threads=fragment.threads,
            capacity=fragment.capacity,
            started_at=time.monotonic(),
        )
        self._popen[proc.pid] = proc
        self._live[fragment.node_id].append(handle)
        return handle

    # ---------- liveness ----------

    def is_running(self, handle: ProcessHandle) -> bool:
        proc = self._popen.get(handle.pid)
        if proc is not None and proc.poll() is not None:
            self._popen.pop(handle.pid, None)
            return False
        try:
            p = psutil.Process(handle.pid)
            return p.is_running() and p.status() != psutil.STATUS_ZOMBIE
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return False

    def committed(self, node_id: str) -> float:
        live = [h for h in self._live.get(node_id, ()) if self.is_running(h)]
        self._live[node_id] = live
        return sum(h.capacity for h in live)

    def kill_all(self, node_id: str) -> int:
        """Terminate every job this executor started on node_id (force-redeploy)."""
        procs = []
        for h in self._live.get(node_id, ()):
            try:
                procs.append(psutil.Process(h.pid))
            except psutil.NoSuchProcess:
                continue
        for p in procs:
            try:
                p.terminate()
            except psutil.NoSuchProcess:
                pass
        _, alive = psutil.wait_procs(procs, timeout=3.0)
        for p in alive:
            try:
                p.kill()
            except psutil.NoSuchProcess:
                pass
        for h in self._live.get(node_id, ()):
            proc = self._popen.pop(h.pid, None)
            if proc is not None:
                proc.poll()
        self._live[node_id] = []
        if procs:
            logger.info("[exec] killed %d job(s) on %s", len(procs), node_id)
        return len(procs)
