"""
Tests for dashboard.app - Dashboard Flask routes
Drives every JSON endpoint through Flask's test client against an offline MonitorService.
"""

from __future__ import annotations

from unittest.mock import patch

import pytest

from dashboard.app import build_app, run_dashboard
from dashboard.config import load_config
from conftest import assert_has_keys


class TestDashboardRoutes:
    """Tests for dashboard Flask routes"""

    @pytest.fixture
    def app(self, monitor_service):
        """Create Flask app over a service that has run two full cycles"""
        monitor_service.poll_once()
        monitor_service.poll_once()
        app = build_app(monitor_service)
        app.config["TESTING"] = True
        return app

    @pytest.fixture
    def client(self, app):
        """Create test client"""
        return app.test_client()

    def test_api_ping_returns_ok(self, client):
        response = client.get("/api/ping")
        assert response.status_code == 200
        assert response.get_json() == {"ok": True, "cycles": 2}

    def test_api_status(self, client):
        data = client.get("/api/status").get_json()
        assert_has_keys(data, ("devices", "cycles", "uptime_sec", "connection_source", "running"))
        assert data["connection_source"] == "ss"

    def test_api_interfaces(self, client):
        data = client.get("/api/interfaces").get_json()
        assert [d["name"] for d in data] == ["eth0", "wlan0"]
        assert_has_keys(data[0], ("current", "average", "min", "max", "total_bytes", "graph_in", "graph_out", "error"))
        assert data[0]["current"] == {"in": 1000.0, "out": 500.0}

    def test_api_interface_by_name(self, client):
        data = client.get("/api/interfaces/wlan0").get_json()
        assert data["name"] == "wlan0"
        assert data["samples"] == 2

    def test_api_interface_unknown(self, client):
        """Test an interface that is not monitored is a JSON 404"""
        response = client.get("/api/interfaces/eth9")
        assert response.status_code == 404
        assert response.get_json() == {"ok": False, "error": "Device not found: eth9"}

    def test_api_connections(self, client):
        data = client.get("/api/connections").get_json()
        assert data["source"] == "ss"
        assert data["count"] == 3
        # known rtt sorts first
        assert data["connections"][0]["remote"] == "203.0.113.9:443"
        assert_has_keys(data["connections"][0], ("local", "protocol", "state", "pid", "process_name", "socket_info"))

    def test_api_connections_filters(self, client):
        data = client.get("/api/connections?state=LISTEN").get_json()
        assert data["count"] == 1
        assert data["connections"][0]["process_name"] == "sshd"

        data = client.get("/api/connections?limit=1").get_json()
        assert data["count"] == 3
        assert len(data["connections"]) == 1

    def test_api_connections_bad_limit(self, client):
        """Test an unparseable limit falls back to the default"""
        data = client.get("/api/connections?limit=lots").get_json()
        assert len(data["connections"]) == 3

    def test_api_connection_stats(self, client):
        data = client.get("/api/connections/stats").get_json()
        assert data["total"] == 3
        assert data["established"] == 2
        assert data["listening"] == 1

    def test_api_processes(self, client):
        data = client.get("/api/processes").get_json()
        assert_has_keys(data["totals"], ("processes", "bytes_sent", "bytes_received", "connections", "listening_ports"))
        assert data["processes"] == []

    def test_api_hosts(self, client):
        data = client.get("/api/hosts?limit=5").get_json()
        assert {h["ip"] for h in data["remote_hosts"]} == {"203.0.113.9", "198.51.100.7"}
        assert {p["name"] for p in data["processes"]} == {"firefox", "sshd", "nc"}

    def test_api_intel_alerts(self, client):
        assert client.get("/api/intel/alerts").get_json() == []

    def test_api_intel_anomalies(self, client):
        data = client.get("/api/intel/anomalies").get_json()
        assert {a["anomaly_type"] for a in data} == {"SuspiciousProtocol", "UnusualGeoLocation"}
        assert len(client.get("/api/intel/anomalies?limit=1").get_json()) == 1

    def test_api_intel_stats(self, client):
        data = client.get("/api/intel/stats").get_json()
        assert data["suspicious_connections"] == 2  # the flagged peer was analyzed on both cycles
        assert data["total_connections"] == 4

    def test_api_intel_connections(self, client):
        data = client.get("/api/intel/connections").get_json()
        assert len(data) == 2
        flagged = client.get("/api/intel/connections?suspicious=1").get_json()
        assert [c["remote_ip"] for c in flagged] == ["198.51.100.7"]
        kinds = {i["kind"] for i in flagged[0]["threat_indicators"]}
        assert kinds == {"SuspiciousPort", "GeoAnomaly"}
        assert flagged[0]["direction"] == "outbound"

    def test_unknown_route(self, client):
        response = client.get("/api/nothing-here")
        assert response.status_code == 404
        assert response.get_json()["ok"] is False


class TestRunDashboard:
    """Tests for run_dashboard"""

    def test_serves_with_waitress(self, monitor_service):
        cfg = load_config()
        with patch("dashboard.app.HAVE_WAITRESS", True), patch("dashboard.app._serve") as mock_serve:
            run_dashboard(monitor_service, cfg)
        kwargs = mock_serve.call_args.kwargs
        assert (kwargs["host"], kwargs["port"]) == (cfg.host, cfg.port)

    def test_shutdown_is_quiet(self, monitor_service):
        with patch("dashboard.app.HAVE_WAITRESS", True), patch("dashboard.app._serve", side_effect=KeyboardInterrupt):
            run_dashboard(monitor_service, load_config())
