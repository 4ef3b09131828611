import json
import os
import threading
from types import SimpleNamespace

import pytest

from autopilot import cli, executil


def _write_config(tmp_path, root, extra=""):
    path = tmp_path / "autopilot.yaml"
    path.write_text(
        f"drives: ['/dev/sd?']\nchroot: {root}\nkeys: [{{secret: supersecret}}]\n"
        f"swift-id-pool: [swift1, swift2]\n{extra}",
        encoding="utf-8",
    )
    return str(path)


def test_parser_defaults():
    args = cli.build_parser().parse_args(["/etc/autopilot.yaml"])
    assert args.config == "/etc/autopilot.yaml"
    assert args.once is False
    assert args.interval is None
    assert args.log_dir is None


def test_main_once_succeeds(fake_system, tmp_path, logs):
    fake_system.add_device("sdb", serial="B")
    config_path = _write_config(tmp_path, fake_system.root)

    assert cli.main([config_path, "--once"]) == 0

    assert fake_system.mount_paths() == ["/srv/node/swift1"]
    assert "INFO: completed with errors, see above" not in logs()


def test_main_once_reports_errors(fake_system, tmp_path, logs):
    fake_system.add_device("sdb", serial="B")
    fake_system.fail("cryptsetup", "-q", "luksFormat")
    config_path = _write_config(tmp_path, fake_system.root)

    assert cli.main([config_path, "--once"]) == 1
    assert logs()[-1] == "INFO: completed with errors, see above"


def test_main_writes_jsonl_to_log_dir(fake_system, tmp_path):
    fake_system.add_device("sdb", serial="B")
    log_dir = tmp_path / "logs"
    config_path = _write_config(tmp_path, fake_system.root)

    assert cli.main([config_path, "--once", "--log-dir", str(log_dir)]) == 0

    records = [json.loads(line) for line in (log_dir / executil.LOG_NAME).read_text(encoding="utf-8").splitlines()]
    assert "assigning swift-id 'swift1' to /dev/sdb" in [r.get("msg") for r in records]
    assert all(r["level"] in ("INFO", "DEBUG", "TRACE") for r in records)


def test_main_creates_log_dir_before_the_first_record(fake_system, tmp_path):
    log_dir = tmp_path / "logs"
    config_path = _write_config(tmp_path, fake_system.root)

    assert cli.main([config_path, "--once", "--log-dir", str(log_dir)]) == 0

    assert os.path.isdir(log_dir)
    assert executil.LOG_PATH == str(log_dir / executil.LOG_NAME)


def test_main_invalid_config_is_fatal(tmp_path, logs):
    path = tmp_path / "autopilot.yaml"
    path.write_text("keys: []\n", encoding="utf-8")

    with pytest.raises(SystemExit) as excinfo:
        cli.main([str(path), "--once"])

    assert excinfo.value.code == 1
    assert logs() == ["FATAL: configuration is missing required key 'drives'"]


def test_main_rejects_non_positive_interval(fake_system, tmp_path, logs):
    config_path = _write_config(tmp_path, fake_system.root)
    with pytest.raises(SystemExit):
        cli.main([config_path, "--once", "--interval", "0"])
    assert logs() == ["FATAL: --interval must be positive"]


def test_run_forever_returns_when_stopped(fake_system, monkeypatch):
    fake_system.add_device("sdb", serial="B")
    config = fake_system.config()
    observer = SimpleNamespace(stopped=False)
    observer.stop = lambda: setattr(observer, "stopped", True)
    monkeypatch.setattr(cli, "start_udev_monitor", lambda collector: observer)
    stop = threading.Event()

    original = cli.Reconciler.run_pass

    def run_pass_then_stop(self, batch):
        failed = original(self, batch)
        stop.set()
        return failed

    monkeypatch.setattr(cli.Reconciler, "run_pass", run_pass_then_stop)

    assert cli.run_forever(config, stop) == 0
    assert fake_system.mount_paths() == ["/srv/node/swift1"]
    assert observer.stopped is True
