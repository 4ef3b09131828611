"""Drive registry and reconciliation passes."""

from __future__ import annotations

import os
from typing import Iterable

from .devices import classify, identify_drive
from .executil import describe_failure, error, error_count, info, run
from .luks import check_luks, format_luks_if_required, open_luks, scan_luks_mappings
from .model import Configuration, Drive, DriveKind, Event, EventKind
from .mounts import execute_final_mount, format_filesystem_if_required, mount_device
from .mounttable import scan_mount_points
from .paths import NODE_ROOT, host_path, ready_marker_path, scratch_mount_path
from .quarantine import is_flagged, propagated_swift_id, reinstate
from .swiftid import scan_swift_ids


class Reconciler:
    """Holds every drive seen so far and runs reconciliation passes over them.

    Passes must never overlap; the caller serialises them.
    """

    def __init__(self, config: Configuration):
        self.config = config
        self.drives: dict[str, Drive] = {}

    def register(self, matched_path: str, device_path: str) -> Drive:
        drive = self.drives.get(device_path)
        if drive is not None:
            return drive

        drive = Drive(device_path=device_path, matched_path=matched_path)
        drive.temporary_mount.name = identify_drive(drive, self.config)
        drive.temporary_mount.path = scratch_mount_path(drive.temporary_mount.name)
        self.drives[device_path] = drive

        if is_flagged(drive, self.config):
            drive.broken = True
            # keeps the identity reserved while the drive is quarantined
            drive.swift_id = propagated_swift_id(drive, self.config)
            info("%s is flagged as broken, skipping it until it is reinstated", device_path)
        elif classify(drive, self.config):
            drive.started_out_empty = drive.kind is DriveKind.UNKNOWN
        return drive

    def _converge(self, targets: Iterable[Drive]) -> None:
        drives = sorted((d for d in targets if not d.broken), key=lambda d: d.device_path)
        if not drives:
            return

        mappings = scan_luks_mappings(self.config)
        for drive in drives:
            check_luks(drive, mappings, self.config)

        mounts = scan_mount_points(self.config)
        for drive in drives:
            if drive.broken:
                continue
            open_luks(drive, self.config)
            if self.config.keys:
                format_luks_if_required(drive, self.config)
                open_luks(drive, self.config)
            if format_filesystem_if_required(drive, self.config):
                mount_device(drive, self.config, mounts)

    def handle(self, event: Event) -> None:
        info("event received: %s", event.describe())

        if event.kind is EventKind.NEW_DEVICE:
            targets = [self.register(event.matched_path, event.device_path)]
        elif event.kind is EventKind.REINSTATED:
            drive = self.drives.get(event.device_path)
            if drive is None or not reinstate(drive):
                return
            targets = [drive]
        else:
            targets = list(self.drives.values())

        self._converge(targets)

    def consolidate(self) -> None:
        mounts = scan_mount_points(self.config)
        by_id, _ = scan_swift_ids(self.drives.values(), self.config, mounts)
        for swift_id in sorted(by_id):
            drive = by_id[swift_id]
            if not drive.broken:
                execute_final_mount(drive, swift_id, self.config, mounts)
        self._touch_ready_marker()

    def _touch_ready_marker(self) -> None:
        try:
            os.makedirs(host_path(self.config.chroot, NODE_ROOT), exist_ok=True)
        except OSError as exc:
            error("cannot create %s: %s", NODE_ROOT, exc)
            return
        cmd = ["touch", ready_marker_path()]
        res = run(cmd, check=False, chroot=self.config.chroot)
        if not res.ok:
            error(describe_failure(cmd, res))

    def run_pass(self, events: Iterable[Event]) -> bool:
        """Handle a batch of events and consolidate. Returns True if anything failed."""
        before = error_count()
        for event in events:
            self.handle(event)
        self.consolidate()
        return error_count() > before
