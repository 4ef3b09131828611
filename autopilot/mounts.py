"""Mount helpers: filesystem creation, scratch mounts and final mounts."""
from __future__ import annotations

import os

from .devices import classify
from .executil import debug, describe_failure, error, run
from .model import Configuration, Drive, DriveKind, MountRecord
from .mounttable import mount, mount_at, mounts_of, unmount
from .paths import final_mount_path, host_path, is_final_mount, is_scratch_mount, scratch_mount_path
from .quarantine import clear_unmount_propagation, mark_as_broken

FILESYSTEM_TYPE = "xfs"


def format_filesystem_if_required(drive: Drive, config: Configuration) -> bool:
    """Make sure the drive's effective device holds a filesystem.

    Returns True when the device is ready to be mounted.
    """
    if drive.broken:
        return False
    if not classify(drive, config):
        return False
    if drive.kind is DriveKind.FILESYSTEM:
        return True
    if drive.kind is DriveKind.LUKS:
        error("cannot mount %s: it contains a LUKS container that is not open", drive.effective_path)
        return False

    if not drive.started_out_empty:
        error(
            "%s contains neither a filesystem nor a LUKS container, but was not empty when first observed; "
            "refusing to format it",
            drive.effective_path,
        )
        return False

    debug("running mkfs.%s on %s...", FILESYSTEM_TYPE, drive.effective_path)
    cmd = [f"mkfs.{FILESYSTEM_TYPE}", drive.effective_path]
    res = run(cmd, check=False, chroot=config.chroot)
    if not res.ok:
        error(describe_failure(cmd, res))
        mark_as_broken(drive, config)
        return False
    drive.kind = DriveKind.FILESYSTEM
    return True


def _ensure_directory(path: str, config: Configuration) -> bool:
    try:
        os.makedirs(host_path(config.chroot, path), exist_ok=True)
    except OSError as exc:
        error("cannot create mount point %s: %s", path, exc)
        return False
    return True


def mount_device(drive: Drive, config: Configuration, mounts: list[MountRecord]) -> str | None:
    """Mount the drive below the scratch tree unless it is mounted already.

    Every call re-checks existing mounts of the drive: a read-only mount means
    the kernel gave up on the disk, so the drive is quarantined. Returns the
    path where the drive is mounted, or None.
    """
    if drive.broken:
        return None

    effective = drive.effective_path
    scratch = scratch_mount_path(drive.temporary_mount.name)
    drive.temporary_mount.path = scratch

    current = mounts_of(mounts, effective)
    for rec in current:
        if rec.read_only:
            error("mount of %s at %s is read-only (could be due to a disk error)", effective, rec.mount_path)
            mark_as_broken(drive, config)
            return None

    for rec in sorted(current, key=lambda r: not is_final_mount(r.mount_path)):
        if is_final_mount(rec.mount_path):
            return rec.mount_path
        if rec.mount_path == scratch:
            drive.temporary_mount.active = True
            return scratch

    if not _ensure_directory(scratch, config):
        return None
    if not mount(effective, scratch, config):
        mark_as_broken(drive, config)
        return None
    drive.temporary_mount.active = True
    return scratch


def execute_final_mount(drive: Drive, swift_id: str, config: Configuration, mounts: list[MountRecord]) -> bool:
    """Mount the drive at /srv/node/<swift_id>, then drop its scratch mount."""
    effective = drive.effective_path
    final = final_mount_path(swift_id)
    current = mounts_of(mounts, effective)

    if not any(rec.mount_path == final for rec in current):
        occupant = mount_at(mounts, final)
        if occupant is not None:
            error("cannot mount %s to %s: %s is mounted there already", effective, final, occupant.device_path)
            mark_as_broken(drive, config)
            return False
        stale = [rec.mount_path for rec in current if is_final_mount(rec.mount_path)]
        if stale:
            error("%s is mounted at %s, but its swift-id is '%s'", effective, ", ".join(stale), swift_id)
            mark_as_broken(drive, config)
            return False
        if not _ensure_directory(final, config):
            return False
        if not mount(effective, final, config):
            mark_as_broken(drive, config)
            return False
        clear_unmount_propagation(swift_id, config)

    drive.swift_id = swift_id

    # the final mount exists now, so the scratch mount can go
    for rec in current:
        if is_scratch_mount(rec.mount_path) and unmount(rec.mount_path, config):
            drive.temporary_mount.active = False
    return True
