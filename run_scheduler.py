#!/usr/bin/env python3
"""
Standalone scheduler process, or a one-shot run of a single job.

  python run_scheduler.py                      # run all triggers until interrupted
  python run_scheduler.py once reminder_tick   # run one job now and exit
  python run_scheduler.py once daily_generation --date 2024-05-01
  python run_scheduler.py status
"""
from __future__ import annotations

import argparse
import json
import signal
import sys
import time

from dotenv import load_dotenv

load_dotenv(override=True)

from lifepath.clock import parse_date  # noqa: E402
from lifepath.db import init_db  # noqa: E402
from lifepath.scheduler import Orchestrator, default_schedules  # noqa: E402


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, default=str))


def _serve(orch: Orchestrator) -> None:
    stopping = {"flag": False}

    def _stop(signum, _frame):
        print(f"[scheduler] signal {signum}; stopping")
        stopping["flag"] = True

    signal.signal(signal.SIGINT, _stop)
    signal.signal(signal.SIGTERM, _stop)
    _print(orch.start())
    while not stopping["flag"]:
        time.sleep(1)
    orch.stop()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="LifePath routine scheduler")
    sub = parser.add_subparsers(dest="cmd")
    sub.add_parser("serve", help="run all triggers (default)")
    once = sub.add_parser("once", help="run one job now")
    once.add_argument("job", choices=sorted(default_schedules()))
    once.add_argument("--date", help="target date for generation jobs (YYYY-MM-DD)")
    sub.add_parser("status", help="print configured triggers")
    args = parser.parse_args(argv)

    init_db()
    orch = Orchestrator()

    if args.cmd == "once":
        kwargs = {}
        if args.date and args.job.endswith("_generation"):
            kwargs["target_date"] = parse_date(args.date)
        _print(orch.run_job(args.job, **kwargs))
        return 0
    if args.cmd == "status":
        _print(orch.status())
        return 0
    _serve(orch)
    return 0


if __name__ == "__main__":
    sys.exit(main())
