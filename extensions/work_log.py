from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import Any, Dict, Optional

from batcher.utils import append_jsonl

from .output_paths import work_log_path

logger = logging.getLogger(__name__)
if not logger.handlers:
    logger.addHandler(logging.NullHandler())


class WorkLog:
    """
    Shared append-only activity log (one JSON object per line).

    Several controllers, and several processes, may append concurrently; each record
    is a single O_APPEND write so lines never interleave.
    """

    def __init__(self, path: Path, *, enabled: bool = True) -> None:
        self.path = Path(path)
        self.enabled = enabled

    @classmethod
    def in_dir(cls, log_dir: Path, *, enabled: bool = True) -> "WorkLog":
        return cls(work_log_path(log_dir), enabled=enabled)

    def record(self, event: str, data: Optional[Dict[str, Any]] = None) -> None:
        if not self.enabled:
            return
        payload: Dict[str, Any] = {"ts": round(time.time(), 3), "event": event}
        if data:
            payload.update(data)
        try:
            append_jsonl(self.path, json.dumps(payload, ensure_ascii=False))
        except OSError as e:
            # losing an activity line must not stop the scheduler
            logger.warning("[worklog] failed to append to %s: %s", self.path, e)
