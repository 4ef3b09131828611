import json
import os
from types import SimpleNamespace

import pytest

from autopilot import devices, executil, luks, mounts, mounttable, reconcile
from autopilot.model import Configuration, Key


class FakeBlockDevice:
    def __init__(self, path, serial=None, content="empty"):
        self.path = path
        self.serial = serial
        self.content = content
        self.luks_key = None
        self.inner = None


class FakeSystem:
    """In-memory stand-in for the kernel and the CLI tools the autopilot calls.

    Mounting a filesystem replaces the mount point directory below the chroot
    with a symlink to a per-filesystem directory, so files written through one
    mount point are visible through every other mount of the same device.
    """

    def __init__(self, root):
        self.root = root
        self.devices = {}
        self.mappings = {}
        self.mounts = []
        self.calls = []
        self.failures = set()
        (root / "dev").mkdir(exist_ok=True)
        (root / "_fs").mkdir(exist_ok=True)

    def config(self, keys=("supersecret",), pool=("swift1", "swift2", "swift3"), globs=("/dev/sd?",)):
        return Configuration(
            drive_globs=tuple(globs),
            chroot=str(self.root),
            keys=tuple(Key(secret=k) for k in keys),
            swift_id_pool=tuple(pool),
        )

    def add_device(self, name, serial=None, content="empty"):
        path = f"/dev/{name}"
        (self.root / "dev" / name).write_text("")
        self.devices[path] = FakeBlockDevice(path, serial=serial, content=content)
        return path

    def fail(self, *prefix):
        self.failures.add(tuple(prefix))

    def host(self, path):
        return os.path.join(str(self.root), path.lstrip("/"))

    def mount_paths(self, device=None):
        return [m["target"] for m in self.mounts if device is None or m["source"] == device]

    def set_read_only(self, target):
        for m in self.mounts:
            if m["target"] == target:
                m["ro"] = True

    def commands(self, program):
        return [cmd for cmd, _stdin in self.calls if cmd[0] == program]

    def _backing(self, path):
        if path.startswith("/dev/mapper/"):
            name = path[len("/dev/mapper/"):]
            backing = self.mappings.get(name)
            return (self.devices[backing], True) if backing else (None, True)
        return self.devices.get(path), False

    def _content(self, path):
        dev, mapped = self._backing(path)
        if dev is None:
            return None
        return dev.inner if mapped else dev.content

    def _set_content(self, path, content):
        dev, mapped = self._backing(path)
        if mapped:
            dev.inner = content
        else:
            dev.content = content

    def _fs_dir(self, path):
        dev, mapped = self._backing(path)
        name = os.path.basename(dev.path) + ("-inner" if mapped else "")
        fs_dir = self.root / "_fs" / name
        fs_dir.mkdir(exist_ok=True)
        return str(fs_dir)

    def run(self, cmd, check=True, *, stdin=None, chroot=None, skip_log=False, exit_on_error=False):
        cmd = list(cmd)
        self.calls.append((cmd, stdin))
        for prefix in self.failures:
            if tuple(cmd[: len(prefix)]) == prefix:
                return self._result(1, err="injected failure", cmd=cmd, exit_on_error=exit_on_error)
        rc, out, err = self._dispatch(cmd, stdin)
        return self._result(rc, out, err, cmd=cmd, exit_on_error=exit_on_error)

    def _result(self, rc, out="", err="", cmd=None, exit_on_error=False):
        if rc != 0 and exit_on_error:
            executil.fatal("exec(%s) failed: %s", " ".join(cmd), err)
        return SimpleNamespace(rc=rc, out=out, err=err, ok=rc == 0)

    def _dispatch(self, cmd, stdin):
        program = cmd[0]
        if program == "blkid":
            content = self._content(cmd[-1])
            if content is None:
                return 4, "", "no such device"
            if content == "empty":
                return 2, "", ""
            fstype = "crypto_LUKS" if content == "luks" else content
            return 0, f"DEVNAME={cmd[-1]}\nTYPE={fstype}\n", ""
        if program == "cryptsetup":
            return self._cryptsetup(cmd[1:], stdin)
        if program == "dmsetup":
            if not self.mappings:
                return 0, "No devices found\n", ""
            lines = [f"{name}\t(253:{idx})" for idx, name in enumerate(sorted(self.mappings))]
            return 0, "\n".join(lines) + "\n", ""
        if program.startswith("mkfs."):
            self._set_content(cmd[-1], program.split(".", 1)[1])
            return 0, "", ""
        if program == "findmnt":
            payload = {
                "filesystems": [
                    {"source": m["source"], "target": m["target"], "options": "ro,relatime" if m["ro"] else "rw,relatime"}
                    for m in self.mounts
                ]
            }
            return 0, json.dumps(payload), ""
        if program == "mount":
            source, target = cmd[1], cmd[2]
            if self._content(source) != "xfs":
                return 32, "", f"mount: {target}: wrong fs type, bad option, bad superblock on {source}"
            host_target = self.host(target)
            if os.path.isdir(host_target) and not os.path.islink(host_target):
                os.rmdir(host_target)
            os.symlink(self._fs_dir(source), host_target)
            self.mounts.append({"source": source, "target": target, "ro": False})
            return 0, "", ""
        if program == "umount":
            target = cmd[1]
            remaining = [m for m in self.mounts if m["target"] != target]
            if len(remaining) == len(self.mounts):
                return 32, "", f"umount: {target}: not mounted"
            self.mounts = remaining
            host_target = self.host(target)
            os.remove(host_target)
            os.makedirs(host_target)
            return 0, "", ""
        if program == "touch":
            with open(self.host(cmd[1]), "a", encoding="utf-8"):
                pass
            return 0, "", ""
        raise AssertionError(f"unexpected command {cmd}")

    def _cryptsetup(self, args, stdin):
        if args[0] == "-q":
            args = args[1:]
        op = args[0]
        if op == "luksFormat":
            dev = self.devices[args[1]]
            dev.content, dev.luks_key, dev.inner = "luks", stdin.strip(), "empty"
            return 0, "", ""
        if op == "luksOpen":
            dev = self.devices[args[1]]
            if dev.content != "luks" or stdin.strip() != dev.luks_key:
                return 2, "", "No key available with this passphrase."
            if args[2] in self.mappings:
                return 5, "", f"Device {args[2]} already exists."
            self.mappings[args[2]] = args[1]
            return 0, "", ""
        if op == "close":
            name = args[1]
            if f"/dev/mapper/{name}" in {m["source"] for m in self.mounts}:
                return 5, "", f"Device {name} is still in use."
            if self.mappings.pop(name, None) is None:
                return 4, "", f"Device {name} is not active."
            return 0, "", ""
        if op == "status":
            backing = self.mappings.get(args[1])
            if backing is None:
                return 4, f"/dev/mapper/{args[1]} is inactive.\n", ""
            return 0, (
                f"/dev/mapper/{args[1]} is active.\n"
                "  type:    LUKS2\n"
                "  cipher:  aes-xts-plain64\n"
                f"  device:  {backing}\n"
                "  mode:    read/write\n"
            ), ""
        raise AssertionError(f"unexpected cryptsetup call {args}")

    def serial_of(self, host_device):
        for path, dev in self.devices.items():
            if self.host(path) == host_device:
                return dev.serial
        return None


@pytest.fixture
def fake_system(tmp_path, monkeypatch):
    system = FakeSystem(tmp_path)
    for module in (devices, luks, mounttable, mounts, reconcile):
        monkeypatch.setattr(module, "run", system.run)
    monkeypatch.setattr(luks, "udev_settle", lambda: None)
    monkeypatch.setattr(devices, "_udev_serial", system.serial_of)
    return system


@pytest.fixture(autouse=True)
def _quiet_log_files(monkeypatch):
    monkeypatch.setattr(executil, "LOG_DIRS", None)
    monkeypatch.setattr(executil, "LOG_PATH", None)
    monkeypatch.setattr(executil, "LOG_LEVEL", "INFO")
    monkeypatch.setattr(executil, "ERROR_COUNT", 0)
    monkeypatch.delenv("AUTOPILOT_LOG_DIR", raising=False)


@pytest.fixture
def logs(capsys):
    """Return a callable yielding the log lines written since the last call."""
    return lambda: [line for line in capsys.readouterr().err.splitlines() if line]
