"""
goal: configuration loader for NetSentry. loads settings from data/config.json and NETSENTRY_* environment
      variables, with sensible defaults. handles PyInstaller frozen executables by detecting the base directory
      correctly. returns a frozen Config dataclass with the polling cadence, command timeout, monitored devices
      and the dashboard address.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path

ENV_PREFIX = "NETSENTRY_"


# figure out where the app is running from (handles PyInstaller bundles)
def _resolve_base_dir() -> Path:
    import sys

    # if we are frozen (PyInstaller), use the executable's directory
    if getattr(sys, "frozen", False):
        return Path(sys.executable).parent
    # otherwise, go up one level from this file (dashboard/config.py -> project root)
    return Path(__file__).resolve().parents[1]


# frozen dataclass to hold all config values (immutable once created)
@dataclass(frozen=True)
class Config:
    base_dir: Path  # root directory of the project
    suspicious_ips_path: Path  # JSON list of addresses the static geo provider flags
    devices: tuple[str, ...]  # interfaces to monitor, empty means every non-virtual one
    include_virtual: bool  # also list loopback/docker/veth/bridge interfaces
    refresh_interval_sec: float  # interface counter polling
    average_window_sec: float  # sliding window for average speed
    connection_interval_sec: float  # socket table polling + threat analysis
    process_interval_sec: float  # process table polling
    command_timeout_sec: float  # per system utility call
    max_connections: int  # cap on connections analysed per cycle
    host: str  # web server host address
    port: int  # web server port number


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


# get a config value with priority: environment variable > JSON file > default
def _get(obj: dict, key: str, default):
    # check for environment variable first (NETSENTRY_* prefix)
    env = os.getenv(f"{ENV_PREFIX}{key.upper()}")
    if env is not None:
        # bool is an int subclass, so check it first
        if isinstance(default, bool):
            return _parse_bool(env)
        # try to coerce to int/float when default is numeric
        if isinstance(default, int):
            try:
                return int(env)
            except ValueError:
                return default
        if isinstance(default, float):
            try:
                return float(env)
            except ValueError:
                return default
        # comma separated lists
        if isinstance(default, (list, tuple)):
            return [part.strip() for part in env.split(",") if part.strip()]
        # for strings, just return the env var as-is
        return env
    # fall back to JSON file value, or default if not found
    value = obj.get(key, default)
    # hand written JSON sometimes quotes booleans ("false")
    if isinstance(default, bool) and isinstance(value, str):
        return _parse_bool(value)
    return value


def _as_devices(value) -> tuple[str, ...]:
    if isinstance(value, str):
        value = value.split(",")
    if not isinstance(value, (list, tuple)):
        return ()
    return tuple(str(v).strip() for v in value if str(v).strip())


# load configuration from JSON file and environment variables
def load_config() -> Config:
    # base directory can be overridden by env var, otherwise auto-detect
    base = Path(os.getenv(f"{ENV_PREFIX}BASE_DIR") or _resolve_base_dir())
    # config file lives in data/config.json
    cfg_file = base / "data" / "config.json"
    obj = {}
    # try to load the JSON config file if it exists
    if cfg_file.exists():
        try:
            obj = json.loads(cfg_file.read_text(encoding="utf-8") or "{}")
        except (OSError, ValueError):
            # if JSON is broken, just use empty dict (all defaults)
            obj = {}
    if not isinstance(obj, dict):
        obj = {}

    # each value checks: env var > JSON file > default
    return Config(
        base_dir=base,
        suspicious_ips_path=base / _get(obj, "suspicious_ips_path", "data/suspicious_ips.json"),
        devices=_as_devices(_get(obj, "devices", [])),
        include_virtual=bool(_get(obj, "include_virtual", False)),
        refresh_interval_sec=float(_get(obj, "refresh_interval_sec", 0.5)),
        average_window_sec=float(_get(obj, "average_window_sec", 300.0)),
        connection_interval_sec=float(_get(obj, "connection_interval_sec", 2.0)),
        process_interval_sec=float(_get(obj, "process_interval_sec", 3.0)),
        command_timeout_sec=float(_get(obj, "command_timeout_sec", 2.0)),
        max_connections=int(_get(obj, "max_connections", 500)),
        host=_get(obj, "host", "127.0.0.1"),
        port=int(_get(obj, "port", 8766)),
    )
