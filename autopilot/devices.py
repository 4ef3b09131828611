"""Device enumeration, identification and classification."""
from __future__ import annotations

import glob
import hashlib
import os

import pyudev

from .executil import describe_failure, error, run, trace
from .model import Configuration, Drive, DriveKind
from .paths import host_path

_UDEV_CONTEXT = None


def _to_chroot_path(chroot: str | None, path: str) -> str:
    if not chroot or chroot == "/":
        return path
    root = chroot.rstrip("/")
    if path == root:
        return "/"
    if path.startswith(root + "/"):
        return path[len(root):]
    return path


def resolve_in_chroot(chroot: str | None, path: str, max_hops: int = 40) -> str:
    """Follow symlinks on ``path`` as ``readlink -f`` inside the chroot would."""
    current = os.path.normpath(path)
    for _ in range(max_hops):
        try:
            target = os.readlink(host_path(chroot, current))
        except OSError:
            return current
        if not target.startswith("/"):
            target = os.path.join(os.path.dirname(current), target)
        current = os.path.normpath(target)
    return current


def list_drives(config: Configuration) -> list[tuple[str, str]]:
    """Return sorted ``(matched_path, device_path)`` pairs for all glob matches."""
    seen: dict[str, str] = {}
    for pattern in config.drive_globs:
        for match in sorted(glob.glob(host_path(config.chroot, pattern))):
            matched = _to_chroot_path(config.chroot, match)
            resolved = resolve_in_chroot(config.chroot, matched)
            seen.setdefault(resolved, matched)
    return sorted((matched, resolved) for resolved, matched in seen.items())


def _udev_context():
    global _UDEV_CONTEXT
    if _UDEV_CONTEXT is None:
        _UDEV_CONTEXT = pyudev.Context()
    return _UDEV_CONTEXT


def _udev_serial(device_file: str) -> str | None:
    try:
        device = pyudev.Devices.from_device_file(_udev_context(), device_file)
    except (pyudev.DeviceNotFoundError, ValueError, OSError) as exc:
        trace("devices.serial.lookup_failed", device=device_file, error=str(exc))
        return None
    return device.get("ID_SERIAL_SHORT") or device.get("ID_SERIAL") or None


def identify_drive(drive: Drive, config: Configuration) -> str:
    """Derive the identifying token that names the mapping, scratch mount and quarantine link."""
    serial = _udev_serial(host_path(config.chroot, drive.device_path))
    if serial:
        return hashlib.md5(serial.encode("utf-8")).hexdigest()
    token = hashlib.md5(drive.device_path.encode("utf-8")).hexdigest()
    error(
        "cannot determine serial number for %s, will use device ID %s instead",
        drive.device_path, token,
    )
    return token


def _parse_blkid_export(text: str) -> dict[str, str]:
    fields: dict[str, str] = {}
    for line in text.splitlines():
        key, sep, value = line.strip().partition("=")
        if sep:
            fields[key] = value
    return fields


def classify(drive: Drive, config: Configuration) -> bool:
    """Determine what is stored on the drive's effective device.

    Returns False, leaving the drive unclassified, when the probe itself fails.
    The result is cached until :meth:`Drive.invalidate` is called.
    """
    if drive.classified:
        return True

    cmd = ["blkid", "-p", "-o", "export", drive.effective_path]
    res = run(cmd, check=False, chroot=config.chroot)
    if res.rc == 2:
        # blkid found no signature at all
        drive.kind = DriveKind.UNKNOWN
    elif res.ok:
        fields = _parse_blkid_export(res.out)
        fstype = fields.get("TYPE", "")
        if fstype == "crypto_LUKS":
            drive.kind = DriveKind.LUKS
        elif fstype or fields.get("PTTYPE"):
            # a partition table counts as content that must never be formatted over
            drive.kind = DriveKind.FILESYSTEM
        else:
            drive.kind = DriveKind.UNKNOWN
    else:
        error(describe_failure(cmd, res))
        return False

    trace("devices.classify", device=drive.effective_path, kind=drive.kind.value)
    return True
