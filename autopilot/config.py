"""Configuration file loading."""

from __future__ import annotations

import os

import yaml

from .model import Configuration, Key


class ConfigError(ValueError):
    """Raised when the configuration file is missing or malformed."""


def _string_list(conf_in: dict, name: str, required: bool = False) -> tuple[str, ...]:
    value = conf_in.get(name)
    if value is None:
        if required:
            raise ConfigError(f"configuration is missing required key '{name}'")
        return ()
    if not isinstance(value, list) or not all(isinstance(v, str) and v for v in value):
        raise ConfigError(f"'{name}' must be a list of non-empty strings")
    return tuple(value)


def _parse_key(idx: int, entry) -> Key:
    if not isinstance(entry, dict) or "secret" not in entry:
        raise ConfigError(f"keys[{idx}] must be a mapping with a 'secret'")
    secret = entry["secret"]
    if isinstance(secret, dict):
        var = secret.get("fromEnv")
        if not var:
            raise ConfigError(f"keys[{idx}].secret must be a string or contain 'fromEnv'")
        value = os.environ.get(var)
        if not value:
            raise ConfigError(f"keys[{idx}].secret.fromEnv: environment variable {var} is not set")
        return Key(secret=value)
    if not isinstance(secret, str) or not secret:
        raise ConfigError(f"keys[{idx}].secret must be a non-empty string")
    return Key(secret=secret)


def parse_config(conf_in) -> Configuration:
    if not isinstance(conf_in, dict):
        raise ConfigError("configuration must be a YAML mapping")

    globs = _string_list(conf_in, "drives", required=True)
    if not globs:
        raise ConfigError("'drives' must list at least one glob pattern")

    keys_in = conf_in.get("keys") or []
    if not isinstance(keys_in, list):
        raise ConfigError("'keys' must be a list")
    keys = tuple(_parse_key(idx, entry) for idx, entry in enumerate(keys_in))

    pool = _string_list(conf_in, "swift-id-pool")
    if len(set(pool)) != len(pool):
        raise ConfigError("'swift-id-pool' contains duplicate entries")

    chroot = conf_in.get("chroot") or "/"
    if not isinstance(chroot, str):
        raise ConfigError("'chroot' must be a string")

    interval = conf_in.get("interval", 30)
    if isinstance(interval, bool) or not isinstance(interval, (int, float)) or interval <= 0:
        raise ConfigError("'interval' must be a positive number of seconds")

    return Configuration(
        drive_globs=globs,
        chroot=chroot,
        keys=keys,
        swift_id_pool=pool,
        interval=float(interval),
    )


def load_config(conf_path: str) -> Configuration:
    if not os.path.isfile(conf_path):
        raise ConfigError(f"configuration file does not exist at {conf_path}")
    try:
        with open(conf_path, "r", encoding="utf-8") as fh:
            conf_in = yaml.safe_load(fh)
    except yaml.YAMLError as exc:
        raise ConfigError(f"YAML syntax error while reading configuration file {conf_path}: {exc}") from exc
    except OSError as exc:
        raise ConfigError(f"cannot read configuration file {conf_path}: {exc}") from exc
    return parse_config(conf_in)
