# SPDX-License-Identifier: GPL-3.0-or-later
"""
goal: the polling side of NetSentry. the core components never start threads, so this service owns the cadence:
interface counters every refresh interval, connections (followed by threat analysis) and processes on their own
slower intervals, each loop in a daemon thread.

locking:
- every interface has its own RateWindow guarded by its own lock
- the intelligence engine has one lock, every analysis and read goes through it
- the service lock guards the cycle counter, the latest analysis results and per-device errors
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from acquisition.errors import DeviceNotFound, SourceUnavailable
from acquisition.interfaces import list_interfaces, read_interface_sample, validate_interface_name
from acquisition.layer import AcquisitionLayer
from acquisition.models import UNSPECIFIED_IP, ConnectionRecord, InterfaceSample
from analysis.intelligence import ConnectionIntelligence, IntelligenceEngine
from analysis.rate_window import DEFAULT_WINDOW_SEC, RateWindow

log = logging.getLogger("netsentry.app")

ReadSampleFn = Callable[[str, float], InterfaceSample]


def resolve_devices(requested: Iterable[str] = (), include_virtual: bool = False, timeout: float = 2.0) -> list[str]:
    """interfaces to monitor: the requested ones (each must answer) or every non-virtual one.

    raises InvalidInterfaceName / DeviceNotFound / NoDevicesFound, all fatal at startup. every requested name is
    checked before the first one is looked up.
    """
    names = [n for n in requested if n]
    if not names:
        return list_interfaces(include_virtual=include_virtual)
    for name in names:
        validate_interface_name(name)
    for name in names:
        read_interface_sample(name, timeout)  # DeviceNotFound propagates
    return names


def has_remote_peer(rec: ConnectionRecord) -> bool:
    return rec.remote_ip not in (UNSPECIFIED_IP, "::") and rec.remote_port != 0


@dataclass
class _InterfaceContext:
    window: RateWindow
    lock: threading.Lock = field(default_factory=threading.Lock)
    error: str | None = None


class MonitorService:
    def __init__(
        self,
        devices: Iterable[str],
        window_size: float = DEFAULT_WINDOW_SEC,
        refresh_interval: float = 0.5,
        connection_interval: float = 2.0,
        process_interval: float = 3.0,
        timeout: float = 2.0,
        max_connections: int = 500,
        acquisition: AcquisitionLayer | None = None,
        engine: IntelligenceEngine | None = None,
        read_sample: ReadSampleFn = read_interface_sample,
    ) -> None:
        self.devices = list(devices)
        self.refresh_interval = refresh_interval
        self.connection_interval = connection_interval
        self.process_interval = process_interval
        self.timeout = timeout
        self.max_connections = max_connections
        self.acquisition = acquisition or AcquisitionLayer(timeout=timeout)
        self.engine = engine or IntelligenceEngine()
        self.started_at = time.time()
        self.cycles = 0  # completed interface polls

        self._read_sample = read_sample
        self._interfaces = {name: _InterfaceContext(RateWindow(window_size)) for name in self.devices}
        self._engine_lock = threading.Lock()
        self._lock = threading.Lock()
        self._intelligence: list[ConnectionIntelligence] = []
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    # polls

    def poll_interfaces(self) -> None:
        for name, ctx in self._interfaces.items():
            try:
                sample = self._read_sample(name, self.timeout)
            except DeviceNotFound as exc:
                # interface went away (usb nic, vpn tunnel), keep the last readings
                if ctx.error is None:
                    log.warning("%s", exc)
                ctx.error = str(exc)
                continue
            except SourceUnavailable as exc:
                log.debug("no counters for %s this cycle: %s", name, exc)
                continue
            with ctx.lock:
                ctx.window.add_sample(sample)
                ctx.error = None
        with self._lock:
            self.cycles += 1

    def poll_connections(self) -> None:
        self.acquisition.update_connections()
        records = [r for r in self.acquisition.connections() if has_remote_peer(r)][: self.max_connections]
        with self._engine_lock:
            results = [self.engine.analyze_connection(r) for r in records]
        with self._lock:
            self._intelligence = results

    def poll_processes(self) -> None:
        self.acquisition.update_processes()

    def poll_once(self) -> None:
        """one pass of everything, used by --once and tests."""
        self.poll_interfaces()
        self.poll_connections()
        self.poll_processes()

    # threads

    def _loop(self, poll: Callable[[], None], interval: float) -> None:
        while not self._stop.is_set():
            poll()
            self._stop.wait(interval)

    def start(self) -> None:
        if self._threads:
            return
        self._stop.clear()
        for name, poll, interval in (
            ("poll-interfaces", self.poll_interfaces, self.refresh_interval),
            ("poll-connections", self.poll_connections, self.connection_interval),
            ("poll-processes", self.poll_processes, self.process_interval),
        ):
            t = threading.Thread(target=self._loop, args=(poll, interval), name=name, daemon=True)
            t.start()
            self._threads.append(t)
        log.info("monitoring %s", ", ".join(self.devices))

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        for t in self._threads:
            t.join(timeout)
        self._threads = []

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    # reads

    def interface_names(self) -> list[str]:
        return list(self._interfaces)

    def interface_snapshot(self, name: str) -> dict[str, Any]:
        """raises KeyError for interfaces we are not monitoring."""
        ctx = self._interfaces[name]
        with ctx.lock:
            snap = ctx.window.snapshot()
        snap["name"] = name
        snap["error"] = ctx.error
        return snap

    def interfaces_snapshot(self) -> list[dict[str, Any]]:
        return [self.interface_snapshot(name) for name in self._interfaces]

    def reset_interface(self, name: str) -> None:
        ctx = self._interfaces[name]
        with ctx.lock:
            ctx.window.reset()

    def intelligence(self) -> list[ConnectionIntelligence]:
        with self._lock:
            return list(self._intelligence)

    def port_scan_alerts(self) -> list[dict[str, Any]]:
        with self._engine_lock:
            return [d.to_dict() for d in self.engine.port_scan_alerts()]

    def recent_anomalies(self, limit: int = 50) -> list[dict[str, Any]]:
        with self._engine_lock:
            return [a.to_dict() for a in self.engine.recent_anomalies(limit)]

    def intel_stats(self) -> dict[str, int]:
        with self._engine_lock:
            return self.engine.connection_stats().to_dict()

    def status(self) -> dict[str, Any]:
        with self._lock:
            cycles = self.cycles
        return {
            "devices": self.interface_names(),
            "cycles": cycles,
            "uptime_sec": time.time() - self.started_at,
            "connection_source": self.acquisition.last_source,
            "running": self.running,
        }
