# SPDX-License-Identifier: GPL-3.0-or-later
"""
goal: discover the host's sockets through the connection-source fallback chain, attribute them to processes,
and keep the latest set sorted by connection quality.

flow per update():
- walk the sources strictly in order and keep the first one that does not raise SourceUnavailable
- records without a pid (kernel tables, netstat) get their owner from psutil's socket table, matched by endpoint
- missing process names come from a pid -> name cache filled through psutil
- sort: known rtt ascending, unknown rtt last, ties by total bytes descending
- the whole list is swapped in one assignment so readers never see a half built set
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Sequence

import psutil

from acquisition.errors import SourceUnavailable
from acquisition.models import ConnectionRecord, ConnectionState, ConnectionStats
from acquisition.owners import inet_sockets, owner_map, record_key
from acquisition.runner import DEFAULT_TIMEOUT_SEC
from acquisition.sources import DEFAULT_SOURCES, ConnectionSource

log = logging.getLogger("netsentry.acquisition")


def connection_sort_key(rec: ConnectionRecord) -> tuple[int, float, int]:
    rtt = rec.socket_info.rtt
    if rtt is None:
        return (1, 0.0, -rec.total_bytes)
    return (0, rtt, -rec.total_bytes)


def sort_connections(records: list[ConnectionRecord]) -> list[ConnectionRecord]:
    return sorted(records, key=connection_sort_key)


def compute_connection_stats(records: Sequence[ConnectionRecord]) -> ConnectionStats:
    stats = ConnectionStats(total=len(records))
    for rec in records:
        if rec.state is ConnectionState.ESTABLISHED:
            stats.established += 1
        elif rec.state is ConnectionState.LISTEN:
            stats.listening += 1
        elif rec.state is ConnectionState.TIME_WAIT:
            stats.time_wait += 1
        else:
            stats.other += 1
        if rec.protocol.is_tcp:
            stats.tcp += 1
        else:
            stats.udp += 1
    return stats


class ConnectionMonitor:
    """owns the current connection set and the process-name cache."""

    def __init__(
        self,
        sources: Sequence[ConnectionSource] = DEFAULT_SOURCES,
        timeout: float = DEFAULT_TIMEOUT_SEC,
    ) -> None:
        self.sources = tuple(sources)
        self.timeout = timeout
        self.last_source: str | None = None  # which source produced the current set
        self._connections: list[ConnectionRecord] = []
        self._names: dict[int, str] = {}  # pid -> process name

    def update(self) -> None:
        records: list[ConnectionRecord] = []
        source_name: str | None = None
        for source in self.sources:
            try:
                records = source.collect(self.timeout)
            except SourceUnavailable as exc:
                log.debug("connection source %s failed, falling back: %s", source.name, exc)
                continue
            source_name = source.name
            break
        else:
            log.debug("every connection source failed, reporting no connections")

        self._attribute(records)
        self.last_source = source_name
        self._connections = sort_connections(records)

    def _attribute(self, records: list[ConnectionRecord]) -> None:
        if any(r.pid is None for r in records):
            try:
                owners = owner_map(inet_sockets())
            except SourceUnavailable as exc:
                log.debug("socket owners unavailable, leaving records unattributed: %s", exc)
                owners = {}
            for rec in records:
                if rec.pid is None:
                    rec.pid = owners.get(record_key(rec))

        # rebuilt every cycle so a recycled pid never keeps a stale name
        names: dict[int, str] = {}
        for rec in records:
            if rec.pid is None:
                continue
            if rec.process_name:
                names.setdefault(rec.pid, rec.process_name)
                continue
            name = names.get(rec.pid) or self._names.get(rec.pid) or self._lookup_name(rec.pid)
            if name:
                names[rec.pid] = name
                rec.process_name = name
        self._names = names

    def _lookup_name(self, pid: int) -> str | None:
        try:
            return psutil.Process(pid).name()
        except psutil.Error:  # gone, zombie, or access denied
            return None

    def process_name(self, pid: int) -> str | None:
        return self._names.get(pid)

    def connections(self) -> list[ConnectionRecord]:
        return list(self._connections)

    def connection_stats(self) -> ConnectionStats:
        return compute_connection_stats(self._connections)

    def top_processes(self, limit: int = 10) -> list[tuple[str, int]]:
        """process name -> connection count, busiest first."""
        counts = Counter(r.process_name for r in self._connections if r.process_name)
        return counts.most_common(limit)

    def top_remote_hosts(self, limit: int = 10) -> list[tuple[str, int]]:
        """remote ip -> established connection count, busiest first."""
        counts = Counter(
            r.remote_ip
            for r in self._connections
            if r.state is ConnectionState.ESTABLISHED and r.remote_ip not in ("0.0.0.0", "::")
        )
        return counts.most_common(limit)
