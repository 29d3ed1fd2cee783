from __future__ import annotations

import re
from pathlib import Path

# File names shared between producers (snapshot provider, ranking refresh) and the scheduler
SNAPSHOT_SUFFIX = "-constants.json"
RANKING_FILE_NAME = "top_targets.json"
FLEET_FILE_NAME = "fleet.json"
WORK_LOG_NAME = "work-log.jsonl"

_SAFE_NAME = re.compile(r"[^A-Za-z0-9_.-]+")


def safe_name(name: str) -> str:
    """Filesystem-safe version of a target or node identifier."""
    cleaned = _SAFE_NAME.sub("_", (name or "").strip())
    return cleaned or "_"


def snapshot_path(data_dir: Path, target: str) -> Path:
    """data/{target}-constants.json"""
    return Path(data_dir) / f"{safe_name(target)}{SNAPSHOT_SUFFIX}"


def ranking_path(data_dir: Path) -> Path:
    return Path(data_dir) / RANKING_FILE_NAME


def fleet_path(data_dir: Path) -> Path:
    return Path(data_dir) / FLEET_FILE_NAME


def work_log_path(log_dir: Path) -> Path:
    return Path(log_dir) / WORK_LOG_NAME


def ensure_target_log_path(log_dir: Path, target: str) -> Path:
    """
    Ensure logs/targets/ exists and return logs/targets/{target}.log
    """
    d = Path(log_dir) / "targets"
    d.mkdir(parents=True, exist_ok=True)
    return d / f"{safe_name(target)}.log"


def ensure_node_dir(nodes_root: Path, node_id: str) -> Path:
    """Working directory that stands in for one worker node's filesystem."""
    d = Path(nodes_root) / safe_name(node_id)
    d.mkdir(parents=True, exist_ok=True)
    return d
