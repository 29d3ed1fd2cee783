from __future__ import annotations

import argparse
import asyncio
import contextlib
import dataclasses
import logging
import signal
import sys
from pathlib import Path
from typing import List, Optional

# Local modules
from batcher.config import MAX_TARGET_COUNT, MIN_TARGET_COUNT, Config, load_config
from batcher.controller import CycleController
from batcher.dispatcher import Dispatcher
from batcher.supervisor import TargetSupervisor
from batcher.utils import MissingInputError, clamp
from batcher.variants import VARIANTS, BatchVariant, get_variant, with_harvest_fraction
from components.executors import JobExecutor, LocalProcessExecutor, SimulatedExecutor
from components.fleet import Fleet, read_fleet_file
from components.snapshot_provider import FileSnapshotProvider
from components.target_selection import read_rankings, refresh_rankings, target_count_for_level

from extensions.logging import LoggingExtension
from extensions.output_paths import fleet_path
from extensions.work_log import WorkLog

log = logging.getLogger("run_batcher")


# ----------------------------
# CLI parsing
# ----------------------------

def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description="Plan → allocate → dispatch batches against one target, or the top-K ranked targets, forever"
    )
    p.add_argument("target", nargs="?", default=None, help="Single target to work (omit to use ranked targets)")
    p.add_argument("--force", action="store_true", help="Kill running jobs and re-copy payloads before starting")
    p.add_argument(
        "--target-count",
        type=int,
        default=None,
        help=f"How many ranked targets to run when no target is given ({MIN_TARGET_COUNT}-{MAX_TARGET_COUNT})",
    )
    p.add_argument("--level", type=int, default=None, help="Derive the target count from a skill level")
    p.add_argument("--mode", choices=sorted(VARIANTS), default=None, help="Scheduling variant (default from BATCH_MODE)")
    p.add_argument("--harvest-fraction", type=float, default=None, help="Override the variant's harvest share (0-1]")
    p.add_argument("--simulate", action="store_true", default=None, help="Use the in-memory job facility")
    p.add_argument("--data-dir", type=Path, default=None, help="Directory holding snapshots, rankings and fleet.json")
    p.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Console/file log level")
    return p


def _apply_args(cfg: Config, args: argparse.Namespace) -> Config:
    changes = {}
    if args.data_dir is not None:
        changes["data_dir"] = args.data_dir
    if args.mode is not None:
        changes["mode"] = args.mode
    if args.simulate:
        changes["simulate"] = True
    return dataclasses.replace(cfg, **changes) if changes else cfg


def _resolve_target_count(cfg: Config, args: argparse.Namespace) -> int:
    if args.target_count is not None:
        n = args.target_count
    elif args.level is not None:
        n = target_count_for_level(args.level)
    else:
        n = cfg.default_target_count
    return clamp(int(n), MIN_TARGET_COUNT, MAX_TARGET_COUNT)


def _resolve_variant(cfg: Config, args: argparse.Namespace) -> BatchVariant:
    variant = get_variant(cfg.mode)
    if args.harvest_fraction is not None:
        frac = min(1.0, max(0.0, float(args.harvest_fraction)))
        variant = with_harvest_fraction(variant, frac)
    return variant


def _ranked_targets(data_dir: Path, count: int) -> List[str]:
    """Refresh the ranking file from the snapshots, then work from what it holds."""
    refreshed = refresh_rankings(data_dir, count)
    try:
        ranked = read_rankings(data_dir)
    except MissingInputError as e:
        log.warning("%s; using the freshly computed ranking", e)
        ranked = refreshed
    return [r.target for r in ranked[:count]]


def _build_executor(cfg: Config, fleet_nodes) -> JobExecutor:
    if cfg.simulate:
        return SimulatedExecutor(capacity={n.node_id: n.total_capacity for n in fleet_nodes.values()})
    return LocalProcessExecutor(cfg.nodes_root, cfg.payload_dir)


def _install_signal_handlers(stop_event: asyncio.Event, reason: List[str]) -> None:
    loop = asyncio.get_running_loop()

    def _stop(name: str) -> None:
        if not reason:
            reason.append(name)
        stop_event.set()

    for sig, name in ((signal.SIGINT, "sigint"), (signal.SIGTERM, "sigterm")):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, _stop, name)


# ----------------------------
# Main
# ----------------------------

async def main_async(argv: Optional[List[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    cfg = _apply_args(load_config(), args)
    target_count = _resolve_target_count(cfg, args)

    if not args.target and target_count <= 0:
        parser.print_usage()
        return 0

    # Logging
    level = getattr(logging, args.log_level)
    log_ext = LoggingExtension(cfg.log_dir, global_level=level, per_target_level=level)
    log.setLevel(level)

    try:
        variant = _resolve_variant(cfg, args)
        provider = FileSnapshotProvider(cfg.data_dir)

        if args.target and not provider.exists(args.target):
            log.error("No snapshot for %s in %s; nothing to do", args.target, cfg.data_dir)
            return 0

        try:
            fleet_nodes = read_fleet_file(fleet_path(cfg.data_dir))
        except MissingInputError as e:
            log.error("%s; nothing to do", e)
            return 0

        executor = _build_executor(cfg, fleet_nodes)
        fleet = Fleet.from_file(fleet_path(cfg.data_dir), executor)

        if args.force:
            killed = sum(executor.kill_all(node_id) for node_id in fleet_nodes)
            log.info("Force redeploy: killed %d running job(s) across %d node(s)", killed, len(fleet_nodes))

        dispatcher = Dispatcher(executor, cfg.payload_id, force=args.force)
        work_log = WorkLog.in_dir(cfg.log_dir, enabled=cfg.work_log_enabled)
        lock = asyncio.Lock()

        log.info(
            "Mode=%s harvest=%.2f simulate=%s target=%s count=%d nodes=%d",
            variant.name, variant.policy.harvest_fraction, cfg.simulate,
            args.target or "-", target_count, len(fleet_nodes),
        )
        work_log.record("start", {
            "mode": variant.name,
            "target": args.target,
            "target_count": target_count,
            "force": bool(args.force),
            "simulate": cfg.simulate,
        })

        def make_controller(target: str) -> CycleController:
            log_ext.get_target_logger(target)
            return CycleController(
                target,
                provider=provider,
                fleet=fleet,
                dispatcher=dispatcher,
                variant=variant,
                cfg=cfg,
                lock=lock,
                work_log=work_log,
            )

        async def select_targets() -> List[str]:
            if args.target:
                return [args.target]
            return await asyncio.to_thread(_ranked_targets, cfg.data_dir, target_count)

        supervisor = TargetSupervisor(
            make_controller=make_controller,
            select_targets=select_targets,
            refresh_seconds=cfg.ranking_refresh_seconds,
            on_stopped=log_ext.drop_target,
        )

        stop_event = asyncio.Event()
        reason: List[str] = []
        _install_signal_handlers(stop_event, reason)
        await supervisor.run(stop_event)

        work_log.record("stop", {"reason": reason[0] if reason else "done"})
        if reason and reason[0] == "sigint":
            return 130
        if reason and reason[0] == "sigterm":
            return 143
        return 0
    finally:
        log_ext.close()


# ----------------------------
# Entrypoint
# ----------------------------

def main(argv: Optional[List[str]] = None) -> int:
    try:
        return asyncio.run(main_async(argv))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
