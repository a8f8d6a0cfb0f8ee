# SPDX-License-Identifier: GPL-3.0-or-later
"""
goal: the /proc tables psutil does not expose: the kernel connection tables, a process's own net/dev view, and the
system wide IpExt octets.
"""

from __future__ import annotations

from acquisition.models import Protocol

PROC_ROOT = "/proc"

# kernel connection tables, one per protocol family
PROC_NET_TABLES: tuple[tuple[str, Protocol], ...] = (
    ("net/tcp", Protocol.TCP),
    ("net/tcp6", Protocol.TCP6),
    ("net/udp", Protocol.UDP),
    ("net/udp6", Protocol.UDP6),
)


def parse_net_dev_totals(content: str) -> tuple[int, int, int, int] | None:
    """sum every interface row of a net/dev table -> (bytes_sent, bytes_received, packets_sent, packets_received)."""
    sent = recv = psent = precv = 0
    for line in content.splitlines()[2:]:
        if ":" not in line:
            continue
        cols = line.partition(":")[2].split()
        if len(cols) < 10:
            continue
        try:
            recv += int(cols[0])
            precv += int(cols[1])
            sent += int(cols[8])
            psent += int(cols[9])
        except ValueError:
            continue
    if sent == recv == 0:
        return None
    return sent, recv, psent, precv


def parse_ipext_octets(content: str) -> tuple[int, int] | None:
    """system wide OutOctets/InOctets from /proc/net/netstat (IpExt header row followed by its value row)."""
    rows = [line.split()[1:] for line in content.splitlines() if line.startswith("IpExt:")]
    if len(rows) < 2:
        return None
    table = dict(zip(rows[0], rows[1]))
    try:
        return int(table["OutOctets"]), int(table["InOctets"])
    except (KeyError, ValueError):
        return None
