from __future__ import annotations

import os
from pathlib import Path

STORAGE_ROOT = "/run/swift-storage"
NODE_ROOT = "/srv/node"
SWIFT_ID_FILE = "swift-id"


def _expand(path: str) -> str:
    candidate = Path(path).expanduser()
    try:
        return str(candidate.resolve())
    except FileNotFoundError:
        return str(candidate)


def autopilot_logs_dir() -> str | None:
    """Return the directory for the JSONL log, if one is configured.

    The location comes from the ``AUTOPILOT_LOG_DIR`` environment variable.
    When unset, records only go to stderr.
    """

    override = os.environ.get("AUTOPILOT_LOG_DIR")
    if override:
        return _expand(override)
    return None


def host_path(chroot: str | None, path: str) -> str:
    """Translate an absolute path inside the chroot into a path for this process."""
    if not chroot or chroot == "/":
        return path
    return os.path.join(chroot, path.lstrip("/"))


def scratch_mount_path(token: str) -> str:
    return f"{STORAGE_ROOT}/{token}"


def broken_dir() -> str:
    return f"{STORAGE_ROOT}/broken"


def broken_link_path(token: str) -> str:
    return f"{broken_dir()}/{token}"


def unmount_propagation_dir() -> str:
    return f"{STORAGE_ROOT}/state/unmount-propagation"


def unmount_propagation_path(swift_id: str) -> str:
    return f"{unmount_propagation_dir()}/{swift_id}"


def final_mount_path(swift_id: str) -> str:
    return f"{NODE_ROOT}/{swift_id}"


def ready_marker_path() -> str:
    return f"{NODE_ROOT}/ready"


def is_scratch_mount(path: str) -> bool:
    parent, _, name = path.rpartition("/")
    return parent == STORAGE_ROOT and name not in ("", "broken", "state")


def is_final_mount(path: str) -> bool:
    parent, _, name = path.rpartition("/")
    return parent == NODE_ROOT and name not in ("", "ready")
