"""Kernel mount table snapshots."""
from __future__ import annotations

import json

from .executil import describe_failure, error, fatal, info, run
from .model import Configuration, MountRecord

FINDMNT_CMD = ["findmnt", "--list", "--json", "-o", "SOURCE,TARGET,OPTIONS"]


def parse_findmnt(text: str) -> list[MountRecord]:
    payload = json.loads(text or "{}")
    records: list[MountRecord] = []
    for entry in payload.get("filesystems") or []:
        source = entry.get("source") or ""
        target = entry.get("target") or ""
        if not source.startswith("/") or not target:
            continue
        # bind mounts of subdirectories show up as "/dev/sdb[/subdir]"
        source = source.split("[", 1)[0]
        options = entry.get("options") or ""
        records.append(
            MountRecord(
                device_path=source,
                mount_path=target,
                read_only="ro" in options.split(","),
                options=options,
            )
        )
    return records


def scan_mount_points(config: Configuration) -> list[MountRecord]:
    res = run(FINDMNT_CMD, check=False, chroot=config.chroot, exit_on_error=True)
    try:
        return parse_findmnt(res.out)
    except json.JSONDecodeError as exc:
        fatal("list mount points: cannot parse findmnt output: %s", exc)


def mounts_of(records: list[MountRecord], *device_paths: str) -> list[MountRecord]:
    wanted = {p for p in device_paths if p}
    return [rec for rec in records if rec.device_path in wanted]


def mount_at(records: list[MountRecord], mount_path: str) -> MountRecord | None:
    for rec in records:
        if rec.mount_path == mount_path:
            return rec
    return None


def mount(device_path: str, mount_path: str, config: Configuration) -> bool:
    cmd = ["mount", device_path, mount_path]
    res = run(cmd, check=False, chroot=config.chroot)
    if not res.ok:
        error(describe_failure(cmd, res))
        return False
    info("mounted %s to %s", device_path, mount_path)
    return True


def unmount(mount_path: str, config: Configuration) -> bool:
    cmd = ["umount", mount_path]
    res = run(cmd, check=False, chroot=config.chroot)
    if not res.ok:
        error(describe_failure(cmd, res))
        return False
    info("unmounted %s", mount_path)
    return True
