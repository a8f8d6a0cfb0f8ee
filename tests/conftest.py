from __future__ import annotations

import os
from typing import Any
from unittest.mock import patch

import pytest
import requests

from acquisition.connections import ConnectionMonitor
from acquisition.errors import DeviceNotFound
from acquisition.layer import AcquisitionLayer
from acquisition.models import ConnectionRecord, ConnectionState, InterfaceSample, Protocol, SocketInfo
from acquisition.processes import ProcessMonitor
from acquisition.sources import ConnectionSource
from analysis.geo import StaticGeoProvider
from analysis.intelligence import IntelligenceEngine
from app.scheduler import MonitorService


def _env_url() -> str:
    return os.getenv("NETSENTRY_BASE_URL", "http://127.0.0.1:8766").rstrip("/")


@pytest.fixture(scope="session")
def base_url() -> str:
    return _env_url()


@pytest.fixture(scope="session")
def http():
    """Simple requests wrapper with a short timeout."""

    class _HTTP:
        def get(self, url: str, **kw):
            kw.setdefault("timeout", 5)
            return requests.get(url, **kw)

    return _HTTP()


@pytest.fixture(scope="session")
def server_up(base_url: str, http):
    """Skip the test if the dashboard isn't reachable."""
    try:
        r = http.get(f"{base_url}/api/ping")
        if r.status_code != 200:
            pytest.skip(f"Server reachable but non-200 from /api/ping: {r.status_code}")
        data = r.json()
        if isinstance(data, dict) and "ok" in data and not data["ok"]:
            pytest.skip("Ping responded but ok=false")
    except (requests.RequestException, ValueError) as exc:
        pytest.skip(f"Server not reachable at {base_url} ({exc})")


def assert_has_keys(obj: dict[str, Any], required: tuple[str, ...]) -> None:
    missing = [k for k in required if k not in obj]
    assert not missing, f"Missing keys: {missing} in {obj}"


# offline fixtures: a MonitorService wired to fake counters and a fixed socket table


class FakeCounters:
    """stands in for read_interface_sample: one second per read, 1000 B/s in and 500 B/s out."""

    def __init__(self, missing: tuple[str, ...] = ()):
        self.reads: dict[str, int] = {}
        self.missing = set(missing)

    def __call__(self, name: str, timeout: float) -> InterfaceSample:
        if name in self.missing:
            raise DeviceNotFound(name)
        n = self.reads.get(name, 0)
        self.reads[name] = n + 1
        return InterfaceSample(
            name=name,
            timestamp=1000.0 + n,
            bytes_in=1000 * n,
            bytes_out=500 * n,
            packets_in=n,
            packets_out=n,
        )


def sample_connections() -> list[ConnectionRecord]:
    return [
        ConnectionRecord(
            "192.168.1.10", 50000, "203.0.113.9", 443, Protocol.TCP, ConnectionState.ESTABLISHED,
            pid=10, process_name="firefox", bytes_sent=4000, socket_info=SocketInfo(rtt=12.5),
        ),
        ConnectionRecord(
            "0.0.0.0", 22, "0.0.0.0", 0, Protocol.TCP, ConnectionState.LISTEN, pid=1, process_name="sshd",
        ),
        ConnectionRecord(
            "192.168.1.10", 50001, "198.51.100.7", 31337, Protocol.TCP, ConnectionState.ESTABLISHED,
            pid=20, process_name="nc",
        ),
    ]


@pytest.fixture
def fake_counters() -> FakeCounters:
    return FakeCounters()


@pytest.fixture
def monitor_service(tmp_path, fake_counters):
    """two interfaces, three sockets (one listener), one flagged remote address, no processes"""
    acquisition = AcquisitionLayer(
        connection_monitor=ConnectionMonitor(sources=[ConnectionSource("ss", lambda timeout: sample_connections())]),
        process_monitor=ProcessMonitor(proc_root=str(tmp_path)),
    )
    engine = IntelligenceEngine(geo_provider=StaticGeoProvider(["198.51.100.7"]))
    service = MonitorService(
        ["eth0", "wlan0"],
        window_size=60.0,
        refresh_interval=0.01,
        connection_interval=0.01,
        process_interval=0.01,
        acquisition=acquisition,
        engine=engine,
        read_sample=fake_counters,
    )
    with patch("acquisition.processes.psutil.process_iter", return_value=[]):
        with patch("acquisition.owners.psutil.net_connections", return_value=[]):
            yield service
            service.stop()
