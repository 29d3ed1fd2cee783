from __future__ import annotations

import logging
import math
import os
import tempfile
from pathlib import Path
from typing import Optional, Tuple

logger = logging.getLogger(__name__)

# ========== Environment helpers ==========

def getenv_str(name: str, default: str) -> str:
    v = os.getenv(name)
    return v if v is not None and v.strip() else default

def getenv_int(name: str, default: int, min_val: Optional[int] = None, max_val: Optional[int] = None) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        val = int(raw)
    except ValueError:
        return default
    if min_val is not None:
        val = max(min_val, val)
    if max_val is not None:
        val = min(max_val, val)
    return val

def getenv_float(name: str, default: float, min_val: Optional[float] = None, max_val: Optional[float] = None) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        val = float(raw)
    except ValueError:
        return default
    if min_val is not None:
        val = max(min_val, val)
    if max_val is not None:
        val = min(max_val, val)
    return val

def getenv_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "t", "yes", "y", "on"}


# comma-separated env values -> tuple (blanks dropped)
def getenv_csv(name: str, default_csv: str) -> Tuple[str, ...]:
    raw = getenv_str(name, default_csv)
    parts = [x.strip() for x in raw.split(",")]
    return tuple(p for p in parts if p)

def clamp(v: int, lo: int, hi: int) -> int:
    return max(lo, min(hi, v))

# ========== Exceptions ==========

class MissingInputError(Exception):
    """A required input (CLI argument, snapshot file, fleet file) is absent or unreadable."""

# ========== Thread math ==========

def ceil_threads(x: float) -> int:
    """
    Ceil a fractional thread requirement, never below 0.

    Float noise (e.g. 99.99999999999999 for an exact 100) is rounded away first so an
    exact requirement is not bumped by one; everything else rounds up.
    """
    if x is None or not math.isfinite(x) or x <= 0:
        return 0
    return max(0, math.ceil(round(x, 9)))

# ========== File I/O ==========

def atomic_write_text(path: Path, data: str, encoding: str = "utf-8") -> None:
    """
    Write text atomically using a NamedTemporaryFile and os.replace on the same filesystem.
    Readers never observe a half-written snapshot or ranking file.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile("w", encoding=encoding, dir=str(path.parent), delete=False) as tmp:
        tmp.write(data)
        tmp.flush()
        os.fsync(tmp.fileno())
        tmp_name = tmp.name
    os.replace(tmp_name, path)

def append_jsonl(path: Path, json_line: str, encoding: str = "utf-8") -> None:
    """
    Fast single-line append using O_APPEND, so concurrent writers never interleave a line.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    b = (json_line.rstrip() + "\n").encode(encoding)
    fd = os.open(path, os.O_CREAT | os.O_APPEND | os.O_WRONLY, 0o644)
    try:
        os.write(fd, b)
    finally:
        os.close(fd)

def read_text_or_none(path: Path, encoding: str = "utf-8") -> Optional[str]:
    try:
        text = path.read_text(encoding=encoding)
    except FileNotFoundError:
        return None
    except (OSError, UnicodeDecodeError) as e:
        logger.warning("[io] failed to read %s: %s", path, e)
        return None
    if not text.strip() or text.strip() in ("null", "undefined"):
        return None
    return text
