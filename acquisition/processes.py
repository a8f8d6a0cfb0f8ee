# SPDX-License-Identifier: GPL-3.0-or-later
"""
goal: per-process network usage. psutil enumerates processes (name, command line) and their sockets, and absolute
counters are turned into per-second rates by differencing against the previous cycle.

byte accounting, first readable source wins:
- /proc/<pid>/net/dev, the network-device view of the process's namespace
- psutil io_counters() read/write bytes divided by 4, a rough proxy for the network share
- system wide IpExt octets from /proc/net/netstat spread evenly over the scanned processes
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

import psutil

from acquisition.errors import SourceUnavailable
from acquisition.models import ProcessRecord
from acquisition.owners import inet_sockets
from acquisition.procfs import PROC_ROOT, parse_ipext_octets, parse_net_dev_totals
from acquisition.runner import read_text

log = logging.getLogger("netsentry.acquisition")

IO_NETWORK_SHARE = 4  # io accounting covers disk too, assume a quarter of it is network


@dataclass
class _Baseline:
    bytes_sent: int
    bytes_received: int
    packets_sent: int
    packets_received: int
    timestamp: float


def _rate(current: int, previous: int, dt: float) -> int:
    # a counter that went backwards (pid reuse, namespace switch) reads as idle
    return int(max(0, current - previous) / dt)


class ProcessMonitor:
    def __init__(self, proc_root: str = PROC_ROOT, clock: Callable[[], float] = time.time) -> None:
        self.proc_root = proc_root
        self._clock = clock
        self._processes: dict[int, ProcessRecord] = {}
        self._previous: dict[int, _Baseline] = {}  # absolute counters from the last cycle

    # scanning

    def update(self) -> None:
        now = self._clock()
        procs = self._scan(now)
        self._count_sockets(procs)
        self._apply_rates(procs, now)
        self._processes = procs

    def _scan(self, now: float) -> dict[int, ProcessRecord]:
        procs: dict[int, ProcessRecord] = {}
        unaccounted: list[ProcessRecord] = []
        for proc in psutil.process_iter(["pid", "name", "cmdline"]):
            info = proc.info  # denied fields come back as None
            name = info.get("name")
            if not name:
                continue
            command = " ".join(info.get("cmdline") or []) or name  # kernel threads have no cmdline
            rec = ProcessRecord(pid=info["pid"], name=name, command=command, last_updated=now)

            counters = self._read_pid_counters(proc)
            if counters is None:
                unaccounted.append(rec)
            else:
                rec.bytes_sent, rec.bytes_received, rec.packets_sent, rec.packets_received = counters
            procs[rec.pid] = rec

        if unaccounted:
            share = self._system_share(len(procs))
            if share is not None:
                for rec in unaccounted:
                    rec.bytes_sent, rec.bytes_received = share
        return procs

    def _read_pid_counters(self, proc: psutil.Process) -> tuple[int, int, int, int] | None:
        try:
            totals = parse_net_dev_totals(read_text(f"{self.proc_root}/{proc.pid}/net/dev"))
        except SourceUnavailable:
            totals = None
        if totals is not None:
            return totals

        try:
            io = proc.io_counters()
        except (psutil.Error, AttributeError):  # other users' io is root only, macOS has no io_counters
            return None
        if io.write_bytes == io.read_bytes == 0:
            return None
        return io.write_bytes // IO_NETWORK_SHARE, io.read_bytes // IO_NETWORK_SHARE, 0, 0

    def _system_share(self, process_count: int) -> tuple[int, int] | None:
        try:
            octets = parse_ipext_octets(read_text(f"{self.proc_root}/net/netstat"))
        except SourceUnavailable as exc:
            log.debug("no system wide network statistics: %s", exc)
            return None
        if octets is None or process_count <= 0:
            return None
        return octets[0] // process_count, octets[1] // process_count

    def _count_sockets(self, procs: dict[int, ProcessRecord]) -> None:
        try:
            sockets = inet_sockets()
        except SourceUnavailable as exc:
            log.debug("socket ownership unavailable, counts stay zero: %s", exc)
            return

        for sock in sockets:
            rec = procs.get(sock.pid)
            if rec is None:
                continue
            rec.connections += 1
            if sock.status == psutil.CONN_ESTABLISHED:
                rec.established_connections += 1
            elif sock.status == psutil.CONN_LISTEN:
                rec.listening_ports += 1

    # rates

    def _apply_rates(self, procs: dict[int, ProcessRecord], now: float) -> None:
        baselines: dict[int, _Baseline] = {}
        for rec in procs.values():
            current = _Baseline(rec.bytes_sent, rec.bytes_received, rec.packets_sent, rec.packets_received, now)
            prev = self._previous.get(rec.pid)
            if prev is not None:
                dt = now - prev.timestamp
                if dt > 0:
                    rec.bytes_sent = _rate(current.bytes_sent, prev.bytes_sent, dt)
                    rec.bytes_received = _rate(current.bytes_received, prev.bytes_received, dt)
                    rec.packets_sent = _rate(current.packets_sent, prev.packets_sent, dt)
                    rec.packets_received = _rate(current.packets_received, prev.packets_received, dt)
                else:
                    rec.bytes_sent = rec.bytes_received = rec.packets_sent = rec.packets_received = 0
            # first sighting keeps the absolute value as its rate
            baselines[rec.pid] = current
        self._previous = baselines  # pids that vanished lose their baseline here

    # accessors

    def processes(self) -> list[ProcessRecord]:
        return sorted(self._processes.values(), key=lambda p: p.total_bytes, reverse=True)

    def top_network_processes(self, limit: int = 10) -> list[ProcessRecord]:
        return [p for p in self.processes() if p.total_bytes > 0 or p.connections > 0][:limit]

    def listening_processes(self) -> list[ProcessRecord]:
        return [p for p in self.processes() if p.listening_ports > 0]

    def totals(self) -> dict[str, int]:
        procs = self._processes.values()
        return {
            "processes": len(self._processes),
            "bytes_sent": sum(p.bytes_sent for p in procs),
            "bytes_received": sum(p.bytes_received for p in procs),
            "connections": sum(p.connections for p in procs),
            "listening_ports": sum(p.listening_ports for p in procs),
        }
