# SPDX-License-Identifier: GPL-3.0-or-later
"""
goal: main launcher for NetSentry: resolves which interfaces to watch, starts the polling service in background
threads and serves the JSON dashboard. `--once` runs a single pass and prints a text overview instead, `--list`
just prints the interfaces. the terminal shows a welcome banner and stays quiet unless --verbose/--debug.
"""

from __future__ import annotations

import argparse
import logging
import sys
import threading
import time

from colorama import Fore, Style
from colorama import init as colorama_init

# load environment variables from .env file before reading config
try:
    from dotenv import load_dotenv

    load_dotenv()  # load .env file if it exists
except ImportError:
    pass  # python-dotenv is optional, NETSENTRY_* can come from the real environment

from acquisition.errors import DeviceNotFound, InvalidInterfaceName, NoDevicesFound
from acquisition.interfaces import list_interfaces
from analysis.geo import StaticGeoProvider
from analysis.intelligence import IntelligenceEngine
from app.scheduler import MonitorService, resolve_devices
from dashboard.app import run_dashboard
from dashboard.config import Config, load_config

# set root logging level high enough so library warnings do not spam the console
logging.basicConfig(level=logging.ERROR)

# silence waitress web server log messages so the console stays clean
logging.getLogger("waitress").setLevel(logging.CRITICAL)
logging.getLogger("waitress.queue").setLevel(logging.CRITICAL)

log = logging.getLogger("netsentry.app")

_LEVEL_COLORS = {
    logging.DEBUG: Style.DIM,
    logging.INFO: Fore.CYAN,
    logging.WARNING: Fore.YELLOW,
    logging.ERROR: Fore.RED,
    logging.CRITICAL: Fore.RED + Style.BRIGHT,
}


class ColorFormatter(logging.Formatter):
    """level-colored one-line records for the terminal."""

    def format(self, record: logging.LogRecord) -> str:
        color = _LEVEL_COLORS.get(record.levelno, "")
        return f"{color}{super().format(record)}{Style.RESET_ALL}"


def setup_logging(verbose: bool = False, debug: bool = False) -> None:
    level = logging.DEBUG if debug else logging.INFO if verbose else logging.WARNING
    root = logging.getLogger("netsentry")
    root.setLevel(level)
    handler = logging.StreamHandler()
    handler.setFormatter(ColorFormatter("%(asctime)s %(levelname)-7s %(name)s: %(message)s", "%H:%M:%S"))
    root.handlers = [handler]
    root.propagate = False  # basicConfig's root handler would print everything twice


def print_banner(cfg: Config) -> None:
    dim, cyan, mag, reset = Style.DIM, Fore.CYAN, Fore.MAGENTA, Style.RESET_ALL
    print(
        f"""
{dim}┌──────────────────────────────────────────────────────┐{reset}
{dim}│{reset}{cyan}{Style.BRIGHT}               N e t S e n t r y{reset}{dim}                      │{reset}
{dim}├──────────────────────────────────────────────────────┤{reset}
{mag}     throughput • sockets • processes • threat intel{reset}
{dim}│{reset}  dashboard: {cyan}http://{cfg.host}:{cfg.port}/api/status{reset}
{dim}│{reset}  press {cyan}Ctrl+C{reset} to quit
{dim}└──────────────────────────────────────────────────────┘{reset}
"""
    )


def format_rate(bytes_per_sec: float) -> str:
    value = float(bytes_per_sec)
    for unit in ("B/s", "KB/s", "MB/s", "GB/s"):
        if value < 1024 or unit == "GB/s":
            return f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} GB/s"  # unreachable, keeps type checkers quiet


def print_overview(service: MonitorService) -> None:
    print(f"{Style.BRIGHT}Interfaces{Style.RESET_ALL}")
    for snap in service.interfaces_snapshot():
        if snap["error"]:
            print(f"  {snap['name']:<12} {Fore.RED}{snap['error']}{Style.RESET_ALL}")
            continue
        cur, avg = snap["current"], snap["average"]
        print(
            f"  {snap['name']:<12} in {format_rate(cur['in']):>12} (avg {format_rate(avg['in'])})"
            f"   out {format_rate(cur['out']):>12} (avg {format_rate(avg['out'])})"
        )

    stats = service.acquisition.connection_stats()
    print(
        f"\n{Style.BRIGHT}Connections{Style.RESET_ALL} via {service.acquisition.last_source or 'no source'}: "
        f"{stats.total} total, {stats.established} established, {stats.listening} listening, "
        f"{stats.tcp} tcp / {stats.udp} udp"
    )
    for ip, count in service.acquisition.top_remote_hosts(5):
        print(f"  {ip:<40} {count}")

    print(f"\n{Style.BRIGHT}Top processes{Style.RESET_ALL}")
    for proc in service.acquisition.top_network_processes(5):
        print(
            f"  {proc.pid:>7} {proc.name:<20} up {format_rate(proc.bytes_sent):>12}  down {format_rate(proc.bytes_received):>12}"
            f"  {proc.connections} sockets"
        )

    intel = service.intel_stats()
    print(
        f"\n{Style.BRIGHT}Threat intelligence{Style.RESET_ALL}: {intel['external_connections']} external, "
        f"{intel['suspicious_connections']} suspicious, {intel['active_port_scans']} active scans"
    )
    for anomaly in service.recent_anomalies(5):
        print(f"  {Fore.YELLOW}[{anomaly['severity']}]{Style.RESET_ALL} {anomaly['description']}")


def build_service(cfg: Config, devices: list[str]) -> MonitorService:
    engine = IntelligenceEngine(geo_provider=StaticGeoProvider.from_file(cfg.suspicious_ips_path))
    return MonitorService(
        devices,
        window_size=cfg.average_window_sec,
        refresh_interval=cfg.refresh_interval_sec,
        connection_interval=cfg.connection_interval_sec,
        process_interval=cfg.process_interval_sec,
        timeout=cfg.command_timeout_sec,
        max_connections=cfg.max_connections,
        engine=engine,
    )


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="NetSentry")
    parser.add_argument("--list", action="store_true", help="list the monitorable interfaces and exit")
    parser.add_argument(
        "--device",
        action="append",
        default=[],
        metavar="NAME",
        help="interface to monitor (repeatable, default: every non-virtual interface)",
    )
    parser.add_argument("--once", action="store_true", help="take one reading, print an overview and exit")
    parser.add_argument("--no-dashboard", action="store_true", help="do not serve the JSON dashboard")
    parser.add_argument("--verbose", action="store_true", help="log informational messages")
    parser.add_argument("--debug", action="store_true", help="log source fallbacks and skipped lines")
    args = parser.parse_args(argv)

    colorama_init()
    setup_logging(verbose=args.verbose, debug=args.debug)
    cfg = load_config()

    try:
        if args.list:
            for name in list_interfaces(include_virtual=True):
                print(name)
            return 0
        devices = resolve_devices(args.device or cfg.devices, cfg.include_virtual, cfg.command_timeout_sec)
    except (NoDevicesFound, DeviceNotFound, InvalidInterfaceName) as exc:
        print(f"{Fore.RED}error:{Style.RESET_ALL} {exc}", file=sys.stderr)
        return 2

    service = build_service(cfg, devices)

    if args.once:
        # two interface readings so there is a speed to show
        service.poll_interfaces()
        time.sleep(cfg.refresh_interval_sec)
        service.poll_once()
        print_overview(service)
        return 0

    print_banner(cfg)
    service.start()
    if not args.no_dashboard:
        threading.Thread(target=run_dashboard, args=(service, cfg), name="dashboard", daemon=True).start()

    try:
        while True:
            time.sleep(5.0)
            if args.no_dashboard:
                print_overview(service)
                print()
    except KeyboardInterrupt:
        print(f"\n{Fore.MAGENTA}⬩{Style.RESET_ALL}{Fore.CYAN}➢ {Style.RESET_ALL} Shutting down NetSentry...\n")
        service.stop()
    return 0


if __name__ == "__main__":
    sys.exit(main())
