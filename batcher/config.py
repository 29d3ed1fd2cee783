from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Tuple

from .utils import getenv_bool, getenv_csv, getenv_float, getenv_int, getenv_str

# ---------- Project Paths ----------
PROJECT_ROOT: Path = Path(__file__).resolve().parents[1]
DATA_DIR: Path = PROJECT_ROOT / "data"
LOG_DIR: Path = PROJECT_ROOT / "logs"
NODES_ROOT: Path = PROJECT_ROOT / "nodes"
PAYLOAD_DIR: Path = PROJECT_ROOT / "payloads"

# Target count bounds accepted on the command line
MIN_TARGET_COUNT = 0
MAX_TARGET_COUNT = 99


# ---------- Config dataclass ----------
@dataclass(frozen=True)
class Config:
    # Paths
    project_root: Path
    data_dir: Path
    log_dir: Path
    nodes_root: Path
    payload_dir: Path

    # Fleet layout
    home_node: str                              # always tried first by the allocator
    excluded_node_prefixes: Tuple[str, ...]     # pool nodes reserved for other work (e.g. "mgmt")
    payload_id: str                             # job script placed on every node touched

    # Scheduling mode (see batcher.variants)
    mode: str

    # Allocation retry / backoff (bounded; replaces the endless sleep-and-recurse)
    alloc_retry_attempts: int
    alloc_retry_initial_delay_ms: int
    alloc_retry_max_delay_ms: int
    alloc_retry_jitter_ms: int

    # Completion polling (variants with await_completion)
    completion_poll_ms: int
    stage_overrun_factor: float                 # wait at most estimate * factor before moving on

    # Target selection
    default_target_count: int
    ranking_refresh_seconds: float

    # Misc
    simulate: bool
    work_log_enabled: bool


# ---------- Loader ----------
def load_config() -> Config:

    cfg = Config(
        project_root=PROJECT_ROOT,
        data_dir=Path(getenv_str("BATCHER_DATA_DIR", str(DATA_DIR))),
        log_dir=Path(getenv_str("BATCHER_LOG_DIR", str(LOG_DIR))),
        nodes_root=Path(getenv_str("BATCHER_NODES_ROOT", str(NODES_ROOT))),
        payload_dir=Path(getenv_str("BATCHER_PAYLOAD_DIR", str(PAYLOAD_DIR))),

        home_node=getenv_str("HOME_NODE", "home"),
        excluded_node_prefixes=getenv_csv("EXCLUDED_NODE_PREFIXES", "mgmt"),
        payload_id=getenv_str("PAYLOAD_ID", "stage_job.py"),

        mode=getenv_str("BATCH_MODE", "batch").strip().lower(),

        # Retry only while a stage starts zero threads; partial batches are accepted.
        alloc_retry_attempts=getenv_int("ALLOC_RETRY_ATTEMPTS", 3, 1, 10),
        alloc_retry_initial_delay_ms=getenv_int("ALLOC_RETRY_INITIAL_DELAY_MS", 1000, 10, 60000),
        alloc_retry_max_delay_ms=getenv_int("ALLOC_RETRY_MAX_DELAY_MS", 8000, 100, 300000),
        alloc_retry_jitter_ms=getenv_int("ALLOC_RETRY_JITTER_MS", 200, 0, 5000),

        completion_poll_ms=getenv_int("COMPLETION_POLL_MS", 250, 10, 10000),
        stage_overrun_factor=getenv_float("STAGE_OVERRUN_FACTOR", 1.5, 1.0, 10.0),

        default_target_count=getenv_int("TARGET_COUNT", 0, MIN_TARGET_COUNT, MAX_TARGET_COUNT),
        ranking_refresh_seconds=getenv_float("RANKING_REFRESH_SECONDS", 600.0, 5.0, 86400.0),

        simulate=getenv_bool("BATCHER_SIMULATE", False),
        work_log_enabled=getenv_bool("WORK_LOG_ENABLED", True),
    )
    return cfg
