# SPDX-License-Identifier: GPL-3.0-or-later
"""
goal: the ordered connection-source strategies. each one is a name plus a collect(timeout) function that either
returns parsed records or raises SourceUnavailable; the monitor walks the list and keeps the first answer.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

from acquisition.errors import SourceUnavailable
from acquisition.models import ConnectionRecord
from acquisition.parsers import parse_lsof_output, parse_netstat_output, parse_proc_net_table, parse_ss_output
from acquisition.procfs import PROC_NET_TABLES, PROC_ROOT
from acquisition.runner import read_text, run_command

SS_ARGS = ("ss", "-t", "-u", "-a", "-n", "-p", "-i", "-e")
NETSTAT_ARGS = ("netstat", "-an")
LSOF_ARGS = ("lsof", "-i", "-n", "-P")

CollectFn = Callable[[float], list[ConnectionRecord]]


@dataclass(frozen=True)
class ConnectionSource:
    name: str
    collect: CollectFn


def collect_ss(timeout: float) -> list[ConnectionRecord]:
    return parse_ss_output(run_command(SS_ARGS, timeout=timeout))


def collect_procfs(timeout: float, proc_root: str = PROC_ROOT) -> list[ConnectionRecord]:
    # plain file reads, the timeout does not apply
    records: list[ConnectionRecord] = []
    readable = 0
    for table, protocol in PROC_NET_TABLES:
        try:
            content = read_text(f"{proc_root}/{table}")
        except SourceUnavailable:
            continue  # tcp6/udp6 are missing on hosts without ipv6
        readable += 1
        records.extend(parse_proc_net_table(content, protocol))
    if not readable:
        raise SourceUnavailable(f"{proc_root}/net", "no kernel connection tables")
    return records


def collect_netstat(timeout: float) -> list[ConnectionRecord]:
    return parse_netstat_output(run_command(NETSTAT_ARGS, timeout=timeout))


def collect_lsof(timeout: float) -> list[ConnectionRecord]:
    return parse_lsof_output(run_command(LSOF_ARGS, timeout=timeout))


# richest first
DEFAULT_SOURCES: tuple[ConnectionSource, ...] = (
    ConnectionSource("ss", collect_ss),
    ConnectionSource("procfs", collect_procfs),
    ConnectionSource("netstat", collect_netstat),
    ConnectionSource("lsof", collect_lsof),
)
