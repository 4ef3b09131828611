"""CLI entrypoint for the Swift drive autopilot."""

from __future__ import annotations

import argparse
import dataclasses
import signal
import sys
import threading
from typing import Optional

from . import executil
from .config import ConfigError, load_config
from .events import DriveCollector, EventQueue, QuarantineWatcher, Scheduler, initial_events, start_udev_monitor
from .executil import error, error_count, fatal, info
from .model import Configuration
from .reconcile import Reconciler


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="swift-drive-autopilot",
        description="Encrypt, identify and mount Swift storage drives; quarantine failing ones.",
    )
    parser.add_argument("config", help="path to the YAML configuration file")
    parser.add_argument(
        "--once",
        action="store_true",
        help="run a single reconciliation pass over all drives and exit",
    )
    parser.add_argument(
        "--interval",
        type=float,
        default=None,
        help="seconds between consistency checks (overrides the configuration)",
    )
    parser.add_argument("--log-dir", default=None, help="also write JSONL log records to this directory")
    return parser


def _exit_code() -> int:
    if error_count():
        info("completed with errors, see above")
        return 1
    return 0


def run_once(config: Configuration) -> int:
    Reconciler(config).run_pass(initial_events(config))
    return _exit_code()


def run_forever(config: Configuration, stop: threading.Event) -> int:
    reconciler = Reconciler(config)
    events = EventQueue()

    collector = DriveCollector(config, events, stop)
    scheduler = Scheduler(events, stop, config.interval)
    watcher = QuarantineWatcher(config, events, stop)
    observer = start_udev_monitor(collector)
    for thread in (collector, scheduler, watcher):
        thread.start()

    # a pass always runs to completion; stop is only honoured between passes
    while not stop.is_set():
        batch = events.next_batch(timeout=1.0)
        if batch:
            reconciler.run_pass(batch)

    observer.stop()
    return _exit_code()


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    if args.log_dir:
        executil.LOG_DIRS = [args.log_dir]
        executil.LOG_PATH = None
        if executil.resolve_log_path() is None:
            error("cannot create log directory %s", args.log_dir)

    try:
        config = load_config(args.config)
    except ConfigError as exc:
        fatal("%s", exc)
    if args.interval is not None:
        if args.interval <= 0:
            fatal("--interval must be positive")
        config = dataclasses.replace(config, interval=args.interval)

    if args.once:
        return run_once(config)

    stop = threading.Event()

    def _request_stop(signum, _frame):
        info("received signal %d, shutting down after the current pass", signum)
        stop.set()

    signal.signal(signal.SIGTERM, _request_stop)
    signal.signal(signal.SIGINT, _request_stop)
    return run_forever(config, stop)


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
