# SPDX-License-Identifier: GPL-3.0-or-later
"""
goal: one object the scheduler and dashboard talk to for sockets and processes. update() refreshes both monitors;
source failures are absorbed by their fallback chains, so it never raises for them.
"""

from __future__ import annotations

import logging

from acquisition.connections import ConnectionMonitor
from acquisition.models import ConnectionRecord, ConnectionStats, ProcessRecord
from acquisition.processes import ProcessMonitor
from acquisition.runner import DEFAULT_TIMEOUT_SEC

log = logging.getLogger("netsentry.acquisition")


class AcquisitionLayer:
    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT_SEC,
        connection_monitor: ConnectionMonitor | None = None,
        process_monitor: ProcessMonitor | None = None,
    ) -> None:
        self.connection_monitor = connection_monitor or ConnectionMonitor(timeout=timeout)
        self.process_monitor = process_monitor or ProcessMonitor()

    def update(self) -> None:
        self.update_connections()
        self.update_processes()

    def update_connections(self) -> None:
        self.connection_monitor.update()
        log.debug(
            "connections refreshed from %s: %d records",
            self.connection_monitor.last_source or "nothing",
            len(self.connection_monitor.connections()),
        )

    def update_processes(self) -> None:
        self.process_monitor.update()

    @property
    def last_source(self) -> str | None:
        return self.connection_monitor.last_source

    def connections(self) -> list[ConnectionRecord]:
        return self.connection_monitor.connections()

    def connection_stats(self) -> ConnectionStats:
        return self.connection_monitor.connection_stats()

    def top_processes(self, limit: int = 10) -> list[tuple[str, int]]:
        return self.connection_monitor.top_processes(limit)

    def top_remote_hosts(self, limit: int = 10) -> list[tuple[str, int]]:
        return self.connection_monitor.top_remote_hosts(limit)

    def processes(self) -> list[ProcessRecord]:
        return self.process_monitor.processes()

    def top_network_processes(self, limit: int = 10) -> list[ProcessRecord]:
        return self.process_monitor.top_network_processes(limit)
