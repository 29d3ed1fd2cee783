"""
Stage payload copied onto worker nodes.

Runs one stage (stabilize / grow / harvest) against a target with the given thread
count. Locally the effect is simulated by holding the slot for the estimated duration.
"""
from __future__ import annotations

import argparse
import json
import sys
import time

STAGES = ("stabilize", "grow", "harvest")


def _parse_args(argv=None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Run one batch stage against a target")
    p.add_argument("stage", choices=STAGES)
    p.add_argument("target")
    p.add_argument("--threads", type=int, default=1)
    p.add_argument("--duration", type=float, default=0.0, help="Seconds the stage takes")
    return p.parse_args(argv)


def main(argv=None) -> int:
    args = _parse_args(argv)
    if args.threads <= 0:
        return 2
    started = time.time()
    time.sleep(max(0.0, args.duration))
    print(json.dumps({
        "stage": args.stage,
        "target": args.target,
        "threads": args.threads,
        "elapsed": round(time.time() - started, 3),
    }))
    return 0


if __name__ == "__main__":
    sys.exit(main())
