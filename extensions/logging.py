from __future__ import annotations
import logging
from pathlib import Path
from typing import Dict, Optional
from contextvars import ContextVar, Token

from .output_paths import ensure_target_log_path

# Per-task context: which target is this controller working on right now?
_CURRENT_TARGET: ContextVar[Optional[str]] = ContextVar("_CURRENT_TARGET", default=None)


class _TargetFilter(logging.Filter):
    """
    Pass records emitted while the current task works on this target, or records
    from a logger named target.<name>. The handler sits on root so every module
    logger reaches it.
    """
    def __init__(self, target: str) -> None:
        super().__init__()
        self.target = str(target)

    def filter(self, record: logging.LogRecord) -> bool:
        if _CURRENT_TARGET.get() == self.target:
            return True
        name = getattr(record, "name", "") or ""
        return name.startswith(f"target.{self.target}")


def current_target() -> Optional[str]:
    return _CURRENT_TARGET.get()


class LoggingExtension:
    def __init__(
        self,
        log_dir: Path = Path("logs"),
        *,
        global_level: int = logging.INFO,
        per_target_level: Optional[int] = None,
        console: bool = True,
    ) -> None:
        self.log_dir = Path(log_dir)
        self.global_level = global_level
        self.per_target_level = per_target_level if per_target_level is not None else global_level
        self._target_handlers: Dict[str, logging.Handler] = {}

        if console:
            self._install_console(self.global_level)

        # Root stays permissive; handler levels do the filtering.
        logging.getLogger().setLevel(logging.DEBUG)

    # ---------------- Console ----------------

    def _install_console(self, level: int) -> None:
        root = logging.getLogger()
        for h in list(root.handlers):
            root.removeHandler(h)

        ch = logging.StreamHandler()
        ch.setLevel(level)
        ch.setFormatter(logging.Formatter("%(asctime)s %(levelname)s: %(message)s", datefmt="%H:%M:%S"))
        root.addHandler(ch)

    # ---------------- Target logger ----------------

    def get_target_logger(self, target: str) -> logging.Logger:
        """
        Logger for one target. Also attaches logs/targets/<target>.log to root,
        filtered so it only receives that target's records.
        """
        if target not in self._target_handlers:
            path = ensure_target_log_path(self.log_dir, target)
            fh = logging.FileHandler(path, mode="a", encoding="utf-8")
            fh.setLevel(self.per_target_level)
            fh.addFilter(_TargetFilter(target))
            fh.setFormatter(logging.Formatter(
                fmt="%(asctime)s %(levelname)s [%(name)s] %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            ))
            logging.getLogger().addHandler(fh)
            self._target_handlers[target] = fh

        logger = logging.getLogger(f"target.{target}")
        logger.setLevel(logging.DEBUG)
        logger.propagate = True
        return logger

    def drop_target(self, target: str) -> None:
        """Detach and close a target's file handler once its controller has stopped."""
        fh = self._target_handlers.pop(target, None)
        if fh is None:
            return
        logging.getLogger().removeHandler(fh)
        fh.close()

    # ---------------- Context helpers ----------------

    @staticmethod
    def set_target_context(target: str) -> Token:
        """Route module loggers of the current task into the target's file. Reset the token when done."""
        return _CURRENT_TARGET.set(str(target))

    @staticmethod
    def reset_target_context(token: Token) -> None:
        try:
            _CURRENT_TARGET.reset(token)
        except ValueError:
            # token created in another context
            pass

    # ---------------- Cleanup ----------------

    def close(self) -> None:
        root = logging.getLogger()
        for fh in self._target_handlers.values():
            root.removeHandler(fh)
            try:
                fh.flush()
            finally:
                fh.close()
        self._target_handlers.clear()
