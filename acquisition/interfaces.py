# SPDX-License-Identifier: GPL-3.0-or-later
"""
goal: enumerate network interfaces and read their cumulative byte/packet/error/drop counters.
tries the kernel counter table first (/proc/net/dev), then the BSD-style `netstat -I <dev> -b` report parsed by
fixed column position, then psutil's per-NIC counters. a source that answers but has no row for the device is a
DeviceNotFound, not a zero reading.
"""

from __future__ import annotations

import logging
import time

import psutil  # cross-platform per-NIC counters, last resort for listing and reading

from acquisition.errors import DeviceNotFound, InvalidInterfaceName, NoDevicesFound, SourceUnavailable
from acquisition.models import InterfaceSample
from acquisition.runner import DEFAULT_TIMEOUT_SEC, read_text, run_command

log = logging.getLogger("netsentry.acquisition")

PROC_NET_DEV = "/proc/net/dev"
VIRTUAL_PREFIXES = ("lo", "docker", "veth", "br-")  # loopback and container plumbing
MAX_INTERFACE_NAME_LEN = 15  # IFNAMSIZ minus the terminating NUL


def _to_int(value: str) -> int:
    try:
        return int(value)
    except ValueError:
        return 0


def parse_proc_net_dev_names(content: str) -> list[str]:
    names: list[str] = []
    for line in content.splitlines()[2:]:  # two header lines
        if ":" not in line:
            continue
        name = line.split(":", 1)[0].strip()
        if name:
            names.append(name)
    return names


def parse_proc_net_dev(content: str, device: str, timestamp: float | None = None) -> InterfaceSample:
    ts = time.time() if timestamp is None else timestamp
    for line in content.splitlines()[2:]:
        if ":" not in line:
            continue
        name, _, rest = line.partition(":")  # "eth0:123" has no space after the colon on busy hosts
        if name.strip() != device:
            continue
        cols = rest.split()
        cols += ["0"] * (16 - len(cols))  # short rows read as zero counters
        return InterfaceSample(
            name=device,
            timestamp=ts,
            bytes_in=_to_int(cols[0]),
            packets_in=_to_int(cols[1]),
            errors_in=_to_int(cols[2]),
            drops_in=_to_int(cols[3]),
            bytes_out=_to_int(cols[8]),
            packets_out=_to_int(cols[9]),
            errors_out=_to_int(cols[10]),
            drops_out=_to_int(cols[11]),
        )
    raise DeviceNotFound(device)


def parse_netstat_interface(content: str, device: str, timestamp: float | None = None) -> InterfaceSample:
    """parse `netstat -I <dev> -b`: Name Mtu Network Address Ipkts Ierrs Ibytes Opkts Oerrs Obytes Coll."""
    ts = time.time() if timestamp is None else timestamp
    for line in content.splitlines():
        parts = line.split()
        if len(parts) < 10 or parts[0] != device:
            continue
        # the first row per interface is the <Link#n> row, which carries the counters we want.
        # interfaces without a hardware address (lo0, utun) leave the Address column empty
        off = 4 if len(parts) >= 11 else 3
        try:
            packets_in, errors_in, bytes_in = int(parts[off]), int(parts[off + 1]), int(parts[off + 2])
            packets_out, errors_out, bytes_out = (
                int(parts[off + 3]),
                int(parts[off + 4]),
                int(parts[off + 5]),
            )
        except ValueError:
            continue  # address rows sometimes shift columns, skip them
        return InterfaceSample(
            name=device,
            timestamp=ts,
            bytes_in=bytes_in,
            bytes_out=bytes_out,
            packets_in=packets_in,
            packets_out=packets_out,
            errors_in=errors_in,
            errors_out=errors_out,
        )
    raise DeviceNotFound(device)


def validate_interface_name(name: str) -> str:
    """reject a user supplied name before it reaches a counter lookup or a command line."""
    if not name:
        raise InvalidInterfaceName(name, "name is empty")
    if len(name) > MAX_INTERFACE_NAME_LEN:
        raise InvalidInterfaceName(name, f"longer than {MAX_INTERFACE_NAME_LEN} characters")
    if name.startswith("-"):
        raise InvalidInterfaceName(name, "starts with '-'")
    if ".." in name or "/" in name or "\\" in name:
        raise InvalidInterfaceName(name, "looks like a path")
    if not name.isprintable():  # NUL and other control characters
        raise InvalidInterfaceName(name, "contains control characters")
    if not all(ch.isalnum() or ch in "-_." for ch in name):
        raise InvalidInterfaceName(name, "only letters, digits, '-', '_' and '.' are allowed")
    return name


def _is_virtual(name: str) -> bool:
    return name.startswith(VIRTUAL_PREFIXES)


def list_interfaces(include_virtual: bool = False) -> list[str]:
    """names of the interfaces worth monitoring. raises NoDevicesFound when there are none."""
    try:
        names = parse_proc_net_dev_names(read_text(PROC_NET_DEV))
    except SourceUnavailable as exc:
        log.debug("interface listing falls back to psutil: %s", exc)
        names = list(psutil.net_io_counters(pernic=True).keys())

    seen: list[str] = []
    for name in names:
        if name in seen:
            continue
        if not include_virtual and _is_virtual(name):
            continue
        try:
            validate_interface_name(name)
        except InvalidInterfaceName as exc:
            log.debug("skipping interface: %s", exc)
            continue
        seen.append(name)
    if not seen:
        raise NoDevicesFound()
    return seen


def read_interface_sample(name: str, timeout: float = DEFAULT_TIMEOUT_SEC) -> InterfaceSample:
    validate_interface_name(name)
    try:
        return parse_proc_net_dev(read_text(PROC_NET_DEV), name)
    except SourceUnavailable as exc:
        log.debug("%s unavailable, trying netstat: %s", PROC_NET_DEV, exc)

    try:
        return parse_netstat_interface(run_command(["netstat", "-I", name, "-b"], timeout=timeout), name)
    except SourceUnavailable as exc:
        log.debug("netstat interface report unavailable, trying psutil: %s", exc)

    counters = psutil.net_io_counters(pernic=True)
    if not counters:
        raise SourceUnavailable("interface counters", "no counter source answered")
    nic = counters.get(name)
    if nic is None:
        raise DeviceNotFound(name)
    return InterfaceSample(
        name=name,
        timestamp=time.time(),
        bytes_in=nic.bytes_recv,
        bytes_out=nic.bytes_sent,
        packets_in=nic.packets_recv,
        packets_out=nic.packets_sent,
        errors_in=nic.errin,
        errors_out=nic.errout,
        drops_in=nic.dropin,
        drops_out=nic.dropout,
    )
