# SPDX-License-Identifier: GPL-3.0-or-later
"""
goal: which process owns which inet socket, from psutil. the system wide table needs root on some platforms, so an
AccessDenied there falls back to asking each visible process for its own sockets.

sockets are matched to parsed ConnectionRecords by endpoint, since not every source reports a pid:
(local ip, local port, remote ip, remote port, tcp?), with v4-mapped ipv6 reduced to ipv4, scope ids dropped and
an unspecified remote end folded to ("", 0).
"""

from __future__ import annotations

import logging
import socket
from dataclasses import dataclass

import psutil

from acquisition.errors import SourceUnavailable
from acquisition.models import ConnectionRecord

log = logging.getLogger("netsentry.acquisition")

EndpointKey = tuple[str, int, str, int, bool]

_UNSPECIFIED = ("", "*", "0.0.0.0", "::")


@dataclass(frozen=True)
class OwnedSocket:
    pid: int
    key: EndpointKey
    status: str  # psutil.CONN_* constant


def normalize_ip(ip: str) -> str:
    ip = ip.split("%", 1)[0].lower()
    if ip.startswith("::ffff:") and "." in ip:
        return ip[7:]
    return ip


def endpoint_key(local_ip: str, local_port: int, remote_ip: str, remote_port: int, tcp: bool) -> EndpointKey:
    remote = normalize_ip(remote_ip)
    if remote in _UNSPECIFIED:
        remote, remote_port = "", 0
    return normalize_ip(local_ip), local_port, remote, remote_port, tcp


def record_key(rec: ConnectionRecord) -> EndpointKey:
    return endpoint_key(rec.local_ip, rec.local_port, rec.remote_ip, rec.remote_port, rec.protocol.is_tcp)


def _owned(pid: int, conn) -> OwnedSocket:
    laddr = conn.laddr or ("", 0)
    raddr = conn.raddr or ("", 0)  # empty tuple for listeners and unconnected udp
    key = endpoint_key(laddr[0], laddr[1], raddr[0], raddr[1], conn.type == socket.SOCK_STREAM)
    return OwnedSocket(pid=pid, key=key, status=conn.status)


def _per_process_sockets() -> list[OwnedSocket]:
    owned: list[OwnedSocket] = []
    for proc in psutil.process_iter():
        try:
            conns = proc.net_connections(kind="inet")
        except psutil.Error:
            continue  # gone, zombie, or not ours
        owned.extend(_owned(proc.pid, c) for c in conns)
    return owned


def inet_sockets() -> list[OwnedSocket]:
    """every inet socket with a known owner. raises SourceUnavailable when psutil cannot list any."""
    try:
        conns = psutil.net_connections(kind="inet")
    except psutil.AccessDenied:
        log.debug("system wide socket table denied, asking each process instead")
        return _per_process_sockets()
    except psutil.Error as exc:
        raise SourceUnavailable("psutil", str(exc)) from exc
    return [_owned(c.pid, c) for c in conns if c.pid is not None]


def owner_map(sockets: list[OwnedSocket]) -> dict[EndpointKey, int]:
    owners: dict[EndpointKey, int] = {}
    for sock in sockets:
        owners.setdefault(sock.key, sock.pid)
    return owners
