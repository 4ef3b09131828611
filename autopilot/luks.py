"""LUKS container lifecycle: open, close, format and kernel reconciliation."""

from __future__ import annotations

import re

from .devices import classify
from .executil import debug, describe_failure, error, fatal, info, run, udev_settle
from .model import Configuration, Drive, DriveKind
from .quarantine import mark_as_broken

MAPPER_PREFIX = "/dev/mapper/"
NO_DEVICES = "No devices found"

_BACKING_DEVICE_RE = re.compile(r"^\s*device:\s*(\S+)\s*$", re.MULTILINE)


def open_luks(drive: Drive, config: Configuration) -> None:
    """Open the LUKS container on ``drive``, trying the configured keys in order."""
    if drive.broken or drive.mapped_device_path:
        return
    if not classify(drive, config):
        return
    if drive.kind is not DriveKind.LUKS:
        return

    mapper_name = drive.temporary_mount.name
    for idx, key in enumerate(config.keys):
        debug("trying to luksOpen %s as %s with key %d...", drive.device_path, mapper_name, idx)
        res = run(
            ["cryptsetup", "luksOpen", drive.device_path, mapper_name],
            check=False,
            stdin=key.secret + "\n",
            chroot=config.chroot,
            skip_log=True,
        )
        if res.ok:
            break
    else:
        # one record for all keys; the number of rejected keys stays out of the log
        error(
            "exec(cryptsetup luksOpen %s %s) failed: none of the configured keys was accepted",
            drive.device_path, mapper_name,
        )
        mark_as_broken(drive, config)
        return

    udev_settle()
    drive.mapped_device_path = MAPPER_PREFIX + mapper_name
    # classification now has to describe the decrypted content
    drive.invalidate()
    info("LUKS container at %s opened as %s", drive.device_path, drive.mapped_device_path)


def close_luks(drive: Drive, config: Configuration) -> bool:
    if not drive.mapped_device_path:
        return True

    mapper_name = drive.mapped_device_path.rsplit("/", 1)[-1]
    cmd = ["cryptsetup", "close", mapper_name]
    res = run(cmd, check=False, chroot=config.chroot)
    if not res.ok:
        # probably still busy; the next event retries
        error(describe_failure(cmd, res))
        return False
    info("LUKS container %s closed", drive.mapped_device_path)
    drive.mapped_device_path = ""
    drive.invalidate()
    return True


def parse_backing_device(status_text: str) -> str | None:
    """Extract the backing device from ``cryptsetup status`` output.

    cryptsetup offers no structured status output, so this reads the
    ``device:`` line of the human-readable report.
    """
    match = _BACKING_DEVICE_RE.search(status_text or "")
    return match.group(1) if match else None


def _backing_device_path(mapper_name: str, config: Configuration) -> str:
    res = run(["cryptsetup", "status", mapper_name], check=False, chroot=config.chroot, exit_on_error=True)
    backing = parse_backing_device(res.out)
    if backing is None:
        fatal("cannot find backing device for %s%s", MAPPER_PREFIX, mapper_name)
    return backing


def scan_luks_mappings(config: Configuration) -> dict[str, str]:
    """Map backing device path to mapping name for every open crypt mapping."""
    result: dict[str, str] = {}
    res = run(["dmsetup", "ls", "--target=crypt"], check=False, chroot=config.chroot, exit_on_error=True)
    if res.out.strip() == NO_DEVICES:
        return result

    for line in res.out.splitlines():
        # "mapname\t(253:0)" or "mapname\t(253, 0)"
        fields = line.split()
        if not fields:
            continue
        mapper_name = fields[0]
        result[_backing_device_path(mapper_name, config)] = mapper_name
    return result


def check_luks(drive: Drive, active_mappings: dict[str, str], config: Configuration) -> None:
    """Reconcile the kernel's crypt mappings with what we believe about ``drive``."""
    actual_name = active_mappings.get(drive.device_path, "")

    if not actual_name:
        if drive.mapped_device_path:
            error(
                "LUKS container in %s should be open at %s, but is not",
                drive.device_path, drive.mapped_device_path,
            )
            drive.mapped_device_path = ""
            drive.invalidate()
            mark_as_broken(drive, config)
        return

    actual_path = MAPPER_PREFIX + actual_name
    if not drive.mapped_device_path:
        drive.mapped_device_path = actual_path
        drive.invalidate()
        info("discovered %s to be mapped to %s already", drive.device_path, drive.mapped_device_path)
        # a live mapping proves the device was not empty
        drive.started_out_empty = False
    elif drive.mapped_device_path != actual_path:
        error(
            "LUKS container in %s should be open at %s, but is actually open at %s",
            drive.device_path, drive.mapped_device_path, actual_path,
        )
        mark_as_broken(drive, config)


def format_luks_if_required(drive: Drive, config: Configuration) -> None:
    """Create a LUKS container on ``drive`` if it holds nothing recognisable."""
    if drive.broken or drive.mapped_device_path:
        return
    if not config.keys:
        fatal("format_luks_if_required called on %s, but no keys specified!", drive.device_path)

    # never format over a filesystem or an existing LUKS header
    if not classify(drive, config):
        return
    if drive.kind is not DriveKind.UNKNOWN:
        return

    debug("running cryptsetup luksFormat %s with key 0...", drive.device_path)
    cmd = ["cryptsetup", "-q", "luksFormat", drive.device_path]
    res = run(
        cmd,
        check=False,
        stdin=config.keys[0].secret + "\n",
        chroot=config.chroot,
        skip_log=True,
    )
    if not res.ok:
        error(describe_failure(cmd, res))
        mark_as_broken(drive, config)
        return
    udev_settle()
    drive.kind = DriveKind.LUKS
