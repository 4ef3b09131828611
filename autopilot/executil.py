from __future__ import annotations

"""Subprocess wrapper, dry-run hook and levelled logging."""

import datetime as _dt
import json
import os
import subprocess
import sys
import time
from typing import Sequence

from .paths import autopilot_logs_dir


LOG_DIRS: list[str] | None = None
LOG_PATH: str | None = None
LOG_NAME = "swift-drive-autopilot.jsonl"


def _log_dirs() -> list[str]:
    if LOG_DIRS:
        return list(LOG_DIRS)
    override = autopilot_logs_dir()
    return [override] if override else []


def _ensure_logger() -> str | None:
    global LOG_PATH
    if LOG_PATH:
        return LOG_PATH
    for d in _log_dirs():
        d_expanded = os.path.expanduser(d)
        try:
            os.makedirs(d_expanded, exist_ok=True)
            LOG_PATH = os.path.join(d_expanded, LOG_NAME)
            return LOG_PATH
        except OSError:
            continue
    LOG_PATH = None
    return None


def resolve_log_path() -> str | None:
    """Return the active log path, creating directories when possible."""

    return _ensure_logger()


class Result:
    def __init__(self, rc: int, out: str, err: str, duration: float):
        self.rc, self.out, self.err, self.duration = rc, out, err, duration

    @property
    def ok(self) -> bool:
        return self.rc == 0


LEVELS = {"TRACE": 5, "DEBUG": 10, "INFO": 20, "ERROR": 40, "FATAL": 50, "NONE": 100}
LOG_LEVEL = os.environ.get("AUTOPILOT_LOG_LEVEL", "INFO").upper()

ERROR_COUNT = 0


def error_count() -> int:
    """Number of ERROR records emitted since process start."""
    return ERROR_COUNT


def _write_jsonl(obj: dict):
    path = _ensure_logger()
    if not path:
        return
    try:
        with open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(obj) + "\n")
    except OSError:
        pass


def _enabled(level: str) -> bool:
    return LEVELS.get(level, 100) >= LEVELS.get(LOG_LEVEL, LEVELS["INFO"])


def log(level: str, message: str, *args, **fields):
    """Emit a log record.

    ERROR records are counted so that callers can tell whether a run had
    residual problems. FATAL records terminate the process once written.
    """

    global ERROR_COUNT
    level = level.upper()
    if args:
        message = message % args
    if level == "ERROR":
        ERROR_COUNT += 1
    if _enabled(level):
        ts = _dt.datetime.now(_dt.timezone.utc).isoformat()
        rec = {"ts": ts, "level": level, "msg": message}
        rec.update(fields)
        _write_jsonl(rec)
        sys.stderr.write(f"{level}: {message}\n")
    if level == "FATAL":
        sys.stderr.flush()
        raise SystemExit(1)


def debug(message: str, *args, **fields):
    log("DEBUG", message, *args, **fields)


def info(message: str, *args, **fields):
    log("INFO", message, *args, **fields)


def error(message: str, *args, **fields):
    log("ERROR", message, *args, **fields)


def fatal(message: str, *args, **fields):
    log("FATAL", message, *args, **fields)


def trace(event: str, **fields):
    if not _enabled("TRACE"):
        return
    ts = _dt.datetime.now(_dt.timezone.utc).isoformat()
    rec = {"ts": ts, "level": "TRACE", "event": event}
    rec.update(fields)
    _write_jsonl(rec)


def _with_chroot(cmd: Sequence[str], chroot: str | None) -> list[str]:
    if chroot and chroot != "/":
        return ["chroot", chroot, *cmd]
    return list(cmd)


def run(
    cmd: Sequence[str],
    check: bool = True,
    *,
    stdin: str | None = None,
    chroot: str | None = None,
    skip_log: bool = False,
    exit_on_error: bool = False,
) -> Result:
    full = _with_chroot(cmd, chroot)
    # secrets travel on stdin; with skip_log even the argv stays out of the log
    logged = [cmd[0]] if skip_log else full
    trace("exec.start", cmd=logged)
    started = time.time()
    try:
        proc = subprocess.run(
            full,
            input=stdin,
            capture_output=True,
            text=True,
        )
    except FileNotFoundError as exc:
        dur = time.time() - started
        res = Result(127, "", str(exc), dur)
    else:
        dur = time.time() - started
        res = Result(proc.returncode, proc.stdout or "", proc.stderr or "", dur)
    if skip_log:
        trace("exec.done", cmd=logged, rc=res.rc, dur=res.duration)
    else:
        trace("exec.done", cmd=logged, rc=res.rc, dur=res.duration, out=res.out, err=res.err)
    if not res.ok:
        if exit_on_error:
            fatal("exec(%s) failed: %s", " ".join(logged), res.err.strip() or f"exit status {res.rc}")
        if check:
            raise subprocess.CalledProcessError(res.rc, full, res.out, res.err)
    return res


def udev_settle():
    try:
        subprocess.run(["udevadm", "settle"], check=False)
    except OSError:
        pass


def describe_failure(cmd: Sequence[str], res: Result) -> str:
    """Format a failed command the way error records report it."""
    detail = (res.err or res.out or "").strip() or f"exit status {res.rc}"
    return f"exec({' '.join(cmd)}) failed: {detail}"
