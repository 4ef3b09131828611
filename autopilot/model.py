from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class DriveKind(Enum):
    UNKNOWN = "unknown"
    LUKS = "luks"
    FILESYSTEM = "filesystem"


@dataclass
class TemporaryMount:
    name: str = ""
    path: str = ""
    active: bool = False


@dataclass
class Drive:
    """One block device, kept for the lifetime of the process.

    ``kind`` is ``None`` while the drive is unclassified. Anything that
    changes the bytes behind :attr:`effective_path` must call
    :meth:`invalidate` so the next classification reads the device again.
    """

    device_path: str
    matched_path: str = ""
    mapped_device_path: str = ""
    kind: Optional[DriveKind] = None
    broken: bool = False
    temporary_mount: TemporaryMount = field(default_factory=TemporaryMount)
    swift_id: str = ""
    started_out_empty: bool = False

    @property
    def classified(self) -> bool:
        return self.kind is not None

    def invalidate(self) -> None:
        self.kind = None

    @property
    def effective_path(self) -> str:
        return self.mapped_device_path or self.device_path


@dataclass(frozen=True)
class MountRecord:
    device_path: str
    mount_path: str
    read_only: bool = False
    options: str = ""


@dataclass(frozen=True)
class Key:
    secret: str = field(repr=False)


@dataclass(frozen=True)
class Configuration:
    drive_globs: tuple[str, ...]
    chroot: str = "/"
    keys: tuple[Key, ...] = ()
    swift_id_pool: tuple[str, ...] = ()
    interval: float = 30.0


class EventKind(Enum):
    NEW_DEVICE = "new-device"
    CONSISTENCY_CHECK = "consistency-check"
    REINSTATED = "reinstated"


@dataclass(frozen=True)
class Event:
    kind: EventKind
    device_path: str = ""
    matched_path: str = ""

    def describe(self) -> str:
        if self.kind is EventKind.NEW_DEVICE:
            return f"new device found: {self.matched_path} -> {self.device_path}"
        if self.kind is EventKind.REINSTATED:
            return f"device reinstated: {self.device_path}"
        return "scheduled consistency check"
