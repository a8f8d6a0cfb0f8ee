# SPDX-License-Identifier: GPL-3.0-or-later
"""
goal: turn the textual socket tables of four different tools into ConnectionRecord lists.

supported dumps:
- rich socket listing (`ss -t -u -a -n -p -i -e`), including the indented tcp_info continuation lines
- kernel connection tables (/proc/net/tcp, tcp6, udp, udp6) with little-endian hex addresses
- generic connection listing (`netstat -an`) in both the Linux `ip:port` and BSD `ip.port` spellings
- file-descriptor listing (`lsof -i -n -P`) with the state in a trailing `(STATE)` token

every parser is pure (text in, records out) and defensive: a short or malformed line raises ParseSkip inside its
line parser, gets logged at debug level, and the rest of the dump is still parsed.
"""

from __future__ import annotations

import ipaddress
import logging
import re
from collections.abc import Callable, Iterable

from acquisition.errors import ParseSkip
from acquisition.models import UNSPECIFIED_IP, ConnectionRecord, ConnectionState, Protocol, SocketInfo

log = logging.getLogger("netsentry.acquisition")

# users:(("sshd",pid=1234,fd=3),("sshd",pid=1200,fd=3)) -> first owner wins
_SS_USERS_RE = re.compile(r'users:\(\("(?P<name>[^"]*)",pid=(?P<pid>\d+)')
_SS_INODE_RE = re.compile(r"\bino:(\d+)")
_NETSTAT_PROG_RE = re.compile(r"^(\d+)/(.+)$")  # Linux `netstat -p` owner column
_BANDWIDTH_RE = re.compile(r"^(\d+(?:\.\d+)?)([KMG]?)bps$")
_BANDWIDTH_SCALE = {"": 1, "K": 1_000, "M": 1_000_000, "G": 1_000_000_000}


# address helpers


def _canonical_ip(addr: ipaddress.IPv4Address | ipaddress.IPv6Address) -> str:
    # v4-mapped v6 (::ffff:1.2.3.4) is reported as plain v4 so internal-network checks see it
    if isinstance(addr, ipaddress.IPv6Address) and addr.ipv4_mapped is not None:
        return str(addr.ipv4_mapped)
    return str(addr)


def _normalize_ip(host: str) -> str:
    if host in ("", "*"):
        return UNSPECIFIED_IP
    try:
        return _canonical_ip(ipaddress.ip_address(host))
    except ValueError as exc:
        raise ParseSkip(f"not an ip address: {host!r}") from exc


def _looks_like_host(host: str) -> bool:
    if host == "*":
        return True
    try:
        ipaddress.ip_address(host.split("%", 1)[0])
    except ValueError:
        return False
    return True


def _parse_port(text: str) -> int:
    if text in ("", "*"):
        return 0
    if not text.isdigit():
        raise ParseSkip(f"bad port: {text!r}")
    port = int(text)
    if port > 65535:
        raise ParseSkip(f"port out of range: {port}")
    return port


def split_endpoint(text: str) -> tuple[str, int, str | None]:
    """split `ip:port`, `ip.port`, `[v6]:port`, `*:*`, `*.*` (with optional %iface scope) into ip, port, iface.

    ss prints the scope of a bracketed address outside the brackets: `[fe80::1]%eth0:546`.
    """
    text = text.strip()
    if not text:
        raise ParseSkip("empty endpoint")

    if text.startswith("["):
        end = text.find("]")
        if end < 0:
            raise ParseSkip(f"unterminated ipv6 endpoint: {text!r}")
        host, rest = text[1:end], text[end + 1 :]
        if rest.startswith("%"):
            scope, sep, port_text = rest[1:].rpartition(":")
            if not sep:
                scope, sep, port_text = rest[1:].rpartition(".")
            if not sep or not scope:
                raise ParseSkip(f"bad scoped ipv6 endpoint: {text!r}")
            host = f"{host}%{scope}"
        elif rest[:1] in (":", "."):  # "]:" (or "]." on BSD)
            port_text = rest[1:]
        else:
            raise ParseSkip(f"no port after ipv6 address: {text!r}")
    else:
        host, port_text = _split_host_port(text)

    iface = None
    if "%" in host:
        host, iface = host.split("%", 1)
    return _normalize_ip(host), _parse_port(port_text), iface or None


def _split_host_port(text: str) -> tuple[str, str]:
    # BSD netstat glues the port on with a dot (10.0.0.5.443, *.22, ::1.631)
    if "." in text:
        head, _, tail = text.rpartition(".")
        if (tail.isdigit() or tail == "*") and _looks_like_host(head):
            return head, tail
    if ":" in text:
        head, _, tail = text.rpartition(":")
        return head, tail
    raise ParseSkip(f"no port separator: {text!r}")


def decode_kernel_address(text: str) -> tuple[str, int]:
    """decode a /proc/net table endpoint: little-endian hex address, big-endian hex port."""
    ip_hex, sep, port_hex = text.partition(":")
    if not sep:
        raise ParseSkip(f"bad kernel address: {text!r}")
    try:
        raw = bytes.fromhex(ip_hex)
        port = int(port_hex, 16)
    except ValueError as exc:
        raise ParseSkip(f"bad kernel address: {text!r}") from exc

    if len(raw) == 4:
        addr: ipaddress.IPv4Address | ipaddress.IPv6Address = ipaddress.IPv4Address(raw[::-1])
    elif len(raw) == 16:
        # four 32-bit words, each stored in host (little-endian) order
        addr = ipaddress.IPv6Address(b"".join(raw[i : i + 4][::-1] for i in range(0, 16, 4)))
    else:
        raise ParseSkip(f"bad kernel address length: {text!r}")
    return _canonical_ip(addr), port


def parse_bandwidth(text: str) -> int | None:
    """`1.2Mbps` -> 1200000. plain integers pass through, anything else is None."""
    text = text.strip()
    m = _BANDWIDTH_RE.match(text)
    if m:
        return int(float(m.group(1)) * _BANDWIDTH_SCALE[m.group(2)])
    try:
        return int(text)
    except ValueError:
        return None


def _parse_lines(lines: Iterable[str], parse_line: Callable[[str], ConnectionRecord | None]) -> list[ConnectionRecord]:
    records: list[ConnectionRecord] = []
    for line in lines:
        try:
            rec = parse_line(line)
        except ParseSkip as exc:
            log.debug("skipping line %r: %s", line, exc)
            continue
        if rec is not None:
            records.append(rec)
    return records


# kernel connection tables


def parse_proc_net_line(line: str, protocol: Protocol) -> ConnectionRecord:
    # sl local_address rem_address st tx_queue:rx_queue tr:tm->when retrnsmt uid timeout inode ...
    fields = line.split()
    if len(fields) < 10:
        raise ParseSkip("short kernel table row")
    local_ip, local_port = decode_kernel_address(fields[1])
    remote_ip, remote_port = decode_kernel_address(fields[2])

    info = SocketInfo()
    tx_hex, _, rx_hex = fields[4].partition(":")
    try:
        info.send_queue = int(tx_hex, 16)
        info.recv_queue = int(rx_hex, 16)
        info.retrans = int(fields[6], 16)
        info.inode = int(fields[9])
    except ValueError as exc:
        raise ParseSkip("bad numeric column in kernel table row") from exc

    return ConnectionRecord(
        local_ip=local_ip,
        local_port=local_port,
        remote_ip=remote_ip,
        remote_port=remote_port,
        protocol=protocol,
        state=ConnectionState.from_kernel_hex(fields[3]),
        socket_info=info,
    )


def parse_proc_net_table(content: str, protocol: Protocol) -> list[ConnectionRecord]:
    lines = content.splitlines()[1:]  # header row
    return _parse_lines(lines, lambda line: parse_proc_net_line(line, protocol))


# rich socket listing (ss)


def _ss_protocol(netid: str, local_ip: str) -> Protocol:
    if netid not in ("tcp", "udp", "tcp6", "udp6"):
        raise ParseSkip(f"unsupported netid {netid!r}")
    return Protocol.build(tcp=netid.startswith("tcp"), ipv6=netid.endswith("6") or ":" in local_ip)


def parse_ss_line(line: str) -> ConnectionRecord:
    parts = line.split()
    if len(parts) < 6:
        raise ParseSkip("short ss row")
    netid, state_name = parts[0], parts[1]
    try:
        recv_q, send_q = int(parts[2]), int(parts[3])
    except ValueError as exc:
        raise ParseSkip("bad queue columns") from exc

    local_ip, local_port, iface = split_endpoint(parts[4])
    remote_ip, remote_port, _ = split_endpoint(parts[5])

    info = SocketInfo(send_queue=send_q, recv_queue=recv_q, interface=iface)
    m = _SS_INODE_RE.search(line)
    if m:
        info.inode = int(m.group(1))

    pid = name = None
    m = _SS_USERS_RE.search(line)
    if m:
        pid, name = int(m.group("pid")), m.group("name")

    return ConnectionRecord(
        local_ip=local_ip,
        local_port=local_port,
        remote_ip=remote_ip,
        remote_port=remote_port,
        protocol=_ss_protocol(netid, local_ip),
        state=ConnectionState.from_name(state_name),
        pid=pid,
        process_name=name,
        socket_info=info,
    )


def apply_ss_details(line: str, record: ConnectionRecord) -> None:
    """fold one indented tcp_info line (`cubic wscale:7,7 rto:204 rtt:1.5/0.75 ...`) into the record."""
    info = record.socket_info
    tokens = line.split()
    for i, tok in enumerate(tokens):
        key, sep, value = tok.partition(":")
        following = tokens[i + 1] if i + 1 < len(tokens) else ""
        if not sep:
            # space separated rates: "pacing_rate 12.3Mbps", "delivery_rate 1Mbps", "send 34Mbps"
            if tok == "pacing_rate":
                info.pacing_rate = parse_bandwidth(following)
            elif tok == "delivery_rate":
                info.delivery_rate = parse_bandwidth(following)
            elif tok == "send":
                info.bandwidth = parse_bandwidth(following)
            continue
        try:
            if key == "rtt":
                rtt, _, var = value.partition("/")
                info.rtt = float(rtt.removesuffix("ms"))
                if var:
                    info.rttvar = float(var.removesuffix("ms"))
            elif key == "cwnd":
                info.cwnd = int(value)
            elif key == "ssthresh":
                info.ssthresh = int(value)
            elif key == "bytes_sent":
                record.bytes_sent = int(value)
            elif key == "bytes_received":
                record.bytes_received = int(value)
            elif key == "retrans":
                # retrans:<in flight>/<total>
                _, _, total = value.partition("/")
                info.retrans = int(total or value)
            elif key == "lost":
                info.lost = int(value)
            elif key == "pacing_rate":
                info.pacing_rate = parse_bandwidth(value)
            elif key == "delivery_rate":
                info.delivery_rate = parse_bandwidth(value)
        except ValueError:
            log.debug("ignoring unparsable ss detail %r", tok)


def parse_ss_output(content: str) -> list[ConnectionRecord]:
    records: list[ConnectionRecord] = []
    current: ConnectionRecord | None = None
    for raw in content.splitlines():
        if not raw.strip():
            continue
        if raw[0].isspace():
            # continuation lines belong to the row above them
            if current is not None:
                apply_ss_details(raw, current)
            continue
        if raw.startswith(("Netid", "State")):
            current = None
            continue
        try:
            current = parse_ss_line(raw)
        except ParseSkip as exc:
            log.debug("skipping ss row %r: %s", raw, exc)
            current = None
            continue
        records.append(current)
    return records


# generic connection listing (netstat)


def parse_netstat_line(line: str) -> ConnectionRecord | None:
    # Proto Recv-Q Send-Q Local Remote [State] [PID/Program]
    parts = line.split()
    if len(parts) < 5:
        raise ParseSkip("short netstat row")
    proto = parts[0].lower()
    if not proto.startswith(("tcp", "udp")):
        return None  # headers, unix sockets, routing noise

    local_ip, local_port, _ = split_endpoint(parts[3])
    remote_ip, remote_port, _ = split_endpoint(parts[4])

    state = ConnectionState.UNKNOWN
    pid = name = None
    for tok in parts[5:]:
        m = _NETSTAT_PROG_RE.match(tok)
        if m:
            pid, name = int(m.group(1)), m.group(2)
        elif state is ConnectionState.UNKNOWN:
            state = ConnectionState.from_name(tok)

    ipv6 = ":" in local_ip or proto in ("tcp6", "udp6")
    try:
        recv_q, send_q = int(parts[1]), int(parts[2])
    except ValueError:
        recv_q = send_q = 0

    return ConnectionRecord(
        local_ip=local_ip,
        local_port=local_port,
        remote_ip=remote_ip,
        remote_port=remote_port,
        protocol=Protocol.build(tcp=proto.startswith("tcp"), ipv6=ipv6),
        state=state,
        pid=pid,
        process_name=name,
        socket_info=SocketInfo(send_queue=send_q, recv_queue=recv_q),
    )


def parse_netstat_output(content: str) -> list[ConnectionRecord]:
    return _parse_lines(content.splitlines(), parse_netstat_line)


# file-descriptor listing (lsof)


def parse_lsof_line(line: str) -> ConnectionRecord | None:
    # COMMAND PID USER FD TYPE DEVICE SIZE/OFF NODE NAME [(STATE)]
    parts = line.split()
    if len(parts) < 9:
        raise ParseSkip("short lsof row")
    if parts[0] == "COMMAND":
        return None
    if not parts[1].isdigit():
        raise ParseSkip("bad pid column")

    # NODE is TCP/UDP and NAME follows it, SIZE/OFF is sometimes blank so search instead of indexing
    idx = next((i for i in range(5, len(parts) - 1) if parts[i] in ("TCP", "UDP")), None)
    if idx is None:
        raise ParseSkip("no TCP/UDP node column")
    name_col = parts[idx + 1]

    state = ConnectionState.UNKNOWN
    last = parts[-1]
    if last.startswith("(") and last.endswith(")"):
        state = ConnectionState.from_name(last.strip("()"))

    local_text, arrow, remote_text = name_col.partition("->")
    local_ip, local_port, _ = split_endpoint(local_text)
    if arrow:
        remote_ip, remote_port, _ = split_endpoint(remote_text)
    else:
        remote_ip, remote_port = UNSPECIFIED_IP, 0  # listeners and unconnected udp

    ipv6 = parts[4] == "IPv6" or ":" in local_ip
    return ConnectionRecord(
        local_ip=local_ip,
        local_port=local_port,
        remote_ip=remote_ip,
        remote_port=remote_port,
        protocol=Protocol.build(tcp=parts[idx] == "TCP", ipv6=ipv6),
        state=state,
        pid=int(parts[1]),
        process_name=parts[0].replace("\\x20", " "),
    )


def parse_lsof_output(content: str) -> list[ConnectionRecord]:
    return _parse_lines(content.splitlines(), parse_lsof_line)
