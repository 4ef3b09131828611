"""Broken-drive quarantine and reinstatement."""

from __future__ import annotations

import os

from .executil import error, info
from .model import Configuration, Drive
from .mounttable import mounts_of, scan_mount_points, unmount
from .paths import (
    broken_dir,
    broken_link_path,
    host_path,
    is_final_mount,
    is_scratch_mount,
    unmount_propagation_dir,
    unmount_propagation_path,
)


def _force_symlink(link: str, target: str) -> None:
    os.makedirs(os.path.dirname(link), exist_ok=True)
    if os.path.lexists(link):
        os.remove(link)
    os.symlink(target, link)


def is_flagged(drive: Drive, config: Configuration) -> bool:
    """Whether a quarantine symlink exists for ``drive`` (e.g. from a previous run)."""
    link = broken_link_path(drive.temporary_mount.name)
    return os.path.islink(host_path(config.chroot, link))


def list_quarantine(config: Configuration) -> dict[str, str]:
    """Map quarantine symlink name to the device path it points at."""
    directory = host_path(config.chroot, broken_dir())
    entries: dict[str, str] = {}
    try:
        names = os.listdir(directory)
    except FileNotFoundError:
        return entries
    for name in names:
        try:
            entries[name] = os.readlink(os.path.join(directory, name))
        except OSError:
            continue
    return entries


def record_unmount_propagation(swift_id: str, drive: Drive, config: Configuration) -> None:
    marker = unmount_propagation_path(swift_id)
    try:
        _force_symlink(host_path(config.chroot, marker), drive.device_path)
    except OSError as exc:
        error("cannot write %s: %s", marker, exc)


def propagated_swift_id(drive: Drive, config: Configuration) -> str:
    """Return the swift-id whose final mount was last torn down for ``drive`` ("" if none)."""
    directory = host_path(config.chroot, unmount_propagation_dir())
    try:
        names = sorted(os.listdir(directory))
    except FileNotFoundError:
        return ""
    for name in names:
        try:
            target = os.readlink(os.path.join(directory, name))
        except OSError:
            continue
        if target == drive.device_path:
            return name
    return ""


def clear_unmount_propagation(swift_id: str, config: Configuration) -> None:
    marker = unmount_propagation_path(swift_id)
    try:
        os.remove(host_path(config.chroot, marker))
    except FileNotFoundError:
        pass
    except OSError as exc:
        error("cannot remove %s: %s", marker, exc)


def _teardown(drive: Drive, config: Configuration) -> None:
    from .luks import close_luks

    records = mounts_of(scan_mount_points(config), drive.effective_path, drive.device_path)
    # final mounts go first so the scratch mount is the last one left
    records.sort(key=lambda rec: not is_final_mount(rec.mount_path))
    for rec in records:
        if is_final_mount(rec.mount_path):
            record_unmount_propagation(rec.mount_path.rsplit("/", 1)[-1], drive, config)
        if unmount(rec.mount_path, config) and is_scratch_mount(rec.mount_path):
            drive.temporary_mount.active = False
    close_luks(drive, config)


def mark_as_broken(drive: Drive, config: Configuration) -> None:
    """Quarantine ``drive``: unmount it, close its mapping and leave a symlink for the operator."""
    if drive.broken:
        return
    drive.broken = True
    info("flagging %s as broken because of previous error", drive.device_path)

    link = broken_link_path(drive.temporary_mount.name)
    try:
        _force_symlink(host_path(config.chroot, link), drive.device_path)
    except OSError as exc:
        error("cannot create symlink %s: %s", link, exc)
    else:
        info("To reinstate this drive into the cluster, delete the symlink at %s", link)

    _teardown(drive, config)


def reinstate(drive: Drive) -> bool:
    """Clear the quarantine flag after the operator removed the symlink.

    Returns False if the drive was not quarantined.
    """
    if not drive.broken:
        return False
    drive.broken = False
    drive.invalidate()
    return True
