# SPDX-License-Identifier: GPL-3.0-or-later
"""
goal: normalized records produced by the acquisition layer. every OS data source (socket listing, kernel
tables, connection listing, file-descriptor listing, /proc) is parsed into these same shapes so the rate and
intelligence engines never care where the data came from.
"""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

UNSPECIFIED_IP = "0.0.0.0"  # stand-in for endpoints the source does not report (listeners, UDP)


class ConnectionState(Enum):
    ESTABLISHED = "ESTABLISHED"
    LISTEN = "LISTEN"
    SYN_SENT = "SYN_SENT"
    SYN_RECV = "SYN_RECV"
    FIN_WAIT1 = "FIN_WAIT1"
    FIN_WAIT2 = "FIN_WAIT2"
    TIME_WAIT = "TIME_WAIT"
    CLOSE = "CLOSE"
    CLOSE_WAIT = "CLOSE_WAIT"
    LAST_ACK = "LAST_ACK"
    CLOSING = "CLOSING"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def from_kernel_hex(cls, code: str) -> ConnectionState:
        # kernel tables use the tcp_states.h numbering, hex encoded
        return _KERNEL_STATES.get(code.upper(), cls.UNKNOWN)

    @classmethod
    def from_name(cls, name: str) -> ConnectionState:
        # accepts ss spelling (ESTAB, SYN-SENT, FIN-WAIT-1), netstat spelling (FIN_WAIT_1) and our own
        key = name.strip().upper().replace("-", "_")
        return _NAMED_STATES.get(key, cls.UNKNOWN)


_KERNEL_STATES: dict[str, ConnectionState] = {
    "01": ConnectionState.ESTABLISHED,
    "02": ConnectionState.SYN_SENT,
    "03": ConnectionState.SYN_RECV,
    "04": ConnectionState.FIN_WAIT1,
    "05": ConnectionState.FIN_WAIT2,
    "06": ConnectionState.TIME_WAIT,
    "07": ConnectionState.CLOSE,
    "08": ConnectionState.CLOSE_WAIT,
    "09": ConnectionState.LAST_ACK,
    "0A": ConnectionState.LISTEN,
    "0B": ConnectionState.CLOSING,
}

_NAMED_STATES: dict[str, ConnectionState] = {
    "ESTAB": ConnectionState.ESTABLISHED,
    "ESTABLISHED": ConnectionState.ESTABLISHED,
    "LISTEN": ConnectionState.LISTEN,
    "UNCONN": ConnectionState.CLOSE,  # ss shows unconnected UDP sockets this way
    "SYN_SENT": ConnectionState.SYN_SENT,
    "SYN_RECV": ConnectionState.SYN_RECV,
    "SYN_RECEIVED": ConnectionState.SYN_RECV,
    "FIN_WAIT1": ConnectionState.FIN_WAIT1,
    "FIN_WAIT_1": ConnectionState.FIN_WAIT1,
    "FIN_WAIT2": ConnectionState.FIN_WAIT2,
    "FIN_WAIT_2": ConnectionState.FIN_WAIT2,
    "TIME_WAIT": ConnectionState.TIME_WAIT,
    "CLOSE": ConnectionState.CLOSE,
    "CLOSED": ConnectionState.CLOSE,
    "CLOSE_WAIT": ConnectionState.CLOSE_WAIT,
    "LAST_ACK": ConnectionState.LAST_ACK,
    "CLOSING": ConnectionState.CLOSING,
}


class Protocol(Enum):
    TCP = "TCP"
    UDP = "UDP"
    TCP6 = "TCP6"
    UDP6 = "UDP6"

    @property
    def is_tcp(self) -> bool:
        return self in (Protocol.TCP, Protocol.TCP6)

    @property
    def is_ipv6(self) -> bool:
        return self in (Protocol.TCP6, Protocol.UDP6)

    @property
    def family(self) -> str:
        return "tcp" if self.is_tcp else "udp"

    @classmethod
    def build(cls, tcp: bool, ipv6: bool) -> Protocol:
        if tcp:
            return cls.TCP6 if ipv6 else cls.TCP
        return cls.UDP6 if ipv6 else cls.UDP


@dataclass(frozen=True)
class InterfaceSample:
    """one point-in-time reading of the cumulative counters of a named interface."""

    name: str
    timestamp: float  # epoch seconds
    bytes_in: int = 0
    bytes_out: int = 0
    packets_in: int = 0
    packets_out: int = 0
    errors_in: int = 0
    errors_out: int = 0
    drops_in: int = 0
    drops_out: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SocketInfo:
    rtt: float | None = None  # round trip time in ms
    rttvar: float | None = None  # rtt variance in ms
    cwnd: int | None = None  # congestion window (segments)
    ssthresh: int | None = None  # slow start threshold
    send_queue: int = 0
    recv_queue: int = 0
    retrans: int = 0
    lost: int = 0
    pacing_rate: int | None = None  # bits per second
    bandwidth: int | None = None  # sender bandwidth estimate, bits per second
    delivery_rate: int | None = None  # bits per second
    duration: float | None = None  # seconds the connection has been alive, when known
    interface: str | None = None  # bound interface, when the source reports one
    inode: int | None = None  # socket inode, used for pid attribution

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ConnectionRecord:
    local_ip: str
    local_port: int
    remote_ip: str
    remote_port: int
    protocol: Protocol
    state: ConnectionState
    pid: int | None = None
    process_name: str | None = None
    bytes_sent: int = 0  # best effort, most sources cannot supply this
    bytes_received: int = 0
    socket_info: SocketInfo = field(default_factory=SocketInfo)

    @property
    def total_bytes(self) -> int:
        return self.bytes_sent + self.bytes_received

    @property
    def local_endpoint(self) -> str:
        return _format_endpoint(self.local_ip, self.local_port)

    @property
    def remote_endpoint(self) -> str:
        return _format_endpoint(self.remote_ip, self.remote_port)

    def to_dict(self) -> dict[str, Any]:
        return {
            "local": self.local_endpoint,
            "remote": self.remote_endpoint,
            "protocol": self.protocol.value,
            "state": self.state.value,
            "pid": self.pid,
            "process_name": self.process_name,
            "bytes_sent": self.bytes_sent,
            "bytes_received": self.bytes_received,
            "socket_info": self.socket_info.to_dict(),
        }


def _format_endpoint(ip: str, port: int) -> str:
    # brackets keep ipv6 endpoints readable (and parseable again)
    if ":" in ip:
        return f"[{ip}]:{port}"
    return f"{ip}:{port}"


@dataclass
class ProcessRecord:
    pid: int
    name: str
    command: str
    connections: int = 0
    established_connections: int = 0
    listening_ports: int = 0
    bytes_sent: int = 0  # bytes/s once rates are computed
    bytes_received: int = 0
    packets_sent: int = 0
    packets_received: int = 0
    last_updated: float = field(default_factory=time.time)

    @property
    def total_bytes(self) -> int:
        return self.bytes_sent + self.bytes_received

    @property
    def total_packets(self) -> int:
        return self.packets_sent + self.packets_received

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ConnectionStats:
    total: int = 0
    established: int = 0
    listening: int = 0
    time_wait: int = 0
    other: int = 0
    tcp: int = 0
    udp: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)
