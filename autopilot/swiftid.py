"""swift-id discovery and assignment."""

from __future__ import annotations

from typing import Iterable

from .executil import error, info
from .model import Configuration, Drive, MountRecord
from .mounttable import mounts_of
from .paths import SWIFT_ID_FILE, host_path, is_final_mount, is_scratch_mount


def _mount_root(drive: Drive, mounts: list[MountRecord]) -> str | None:
    paths = [rec.mount_path for rec in mounts_of(mounts, drive.effective_path)]
    for path in paths:
        if is_final_mount(path):
            return path
    for path in paths:
        if is_scratch_mount(path):
            return path
    return None


def read_swift_id(mount_path: str, config: Configuration) -> str:
    """Return the swift-id stored on the drive mounted at ``mount_path`` ("" if none).

    Raises OSError if the marker exists but cannot be read.
    """
    try:
        with open(host_path(config.chroot, f"{mount_path}/{SWIFT_ID_FILE}"), "r", encoding="utf-8") as fh:
            return fh.read().strip()
    except FileNotFoundError:
        return ""


def write_swift_id(mount_path: str, swift_id: str, config: Configuration) -> None:
    with open(host_path(config.chroot, f"{mount_path}/{SWIFT_ID_FILE}"), "w", encoding="utf-8") as fh:
        fh.write(swift_id + "\n")


def scan_swift_ids(
    drives: Iterable[Drive], config: Configuration, mounts: list[MountRecord]
) -> tuple[dict[str, Drive], bool]:
    """Collect the swift-id of every mounted drive, assigning new ones from the pool.

    Drives that share a swift-id are left out of the result. The second
    element of the returned tuple is True if anything went wrong.
    """
    failed = False
    claims: dict[str, list[Drive]] = {}
    unassigned: list[tuple[Drive, str]] = []
    drives = sorted(drives, key=lambda d: d.device_path)
    # quarantined drives keep their identity for when they are reinstated
    reserved = {d.swift_id for d in drives if d.broken and d.swift_id}

    for drive in drives:
        if drive.broken:
            continue
        mount_path = _mount_root(drive, mounts)
        if mount_path is None:
            continue
        try:
            swift_id = read_swift_id(mount_path, config)
        except OSError as exc:
            error("cannot read %s/%s: %s", mount_path, SWIFT_ID_FILE, exc)
            failed = True
            continue
        if swift_id:
            claims.setdefault(swift_id, []).append(drive)
        else:
            info(
                "no swift-id file found on new device %s (mounted at %s), will try to assign one",
                drive.device_path, mount_path,
            )
            unassigned.append((drive, mount_path))

    result: dict[str, Drive] = {}
    for swift_id, owners in claims.items():
        if len(owners) > 1:
            error(
                "found multiple drives with swift-id '%s' (%s), will not mount any of them",
                swift_id, ", ".join(d.device_path for d in owners),
            )
            failed = True
            continue
        result[swift_id] = owners[0]

    for drive, mount_path in unassigned:
        if not config.swift_id_pool:
            error("no swift-id file found on %s, and no swift-id-pool configured", drive.device_path)
            failed = True
            continue
        swift_id = next((c for c in config.swift_id_pool if c not in claims and c not in reserved), None)
        if swift_id is None:
            error("no swift-id left in swift-id-pool for %s", drive.device_path)
            failed = True
            continue
        info("assigning swift-id '%s' to %s", swift_id, drive.device_path)
        try:
            write_swift_id(mount_path, swift_id, config)
        except OSError as exc:
            error("cannot write %s/%s: %s", mount_path, SWIFT_ID_FILE, exc)
            failed = True
            continue
        claims[swift_id] = [drive]
        result[swift_id] = drive

    return result, failed
