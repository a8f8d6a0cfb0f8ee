# SPDX-License-Identifier: GPL-3.0-or-later
"""
goal: flask JSON dashboard for NetSentry. a thin read-only surface over a running MonitorService: interface
throughput and charts, the current socket set, per-process usage, top talkers, and the threat intelligence
outputs (port scan alerts, recent anomalies, aggregate stats). runs entirely locally.

routes:
- /api/ping, /api/status
- /api/interfaces, /api/interfaces/<name> (404 when the interface is not monitored)
- /api/connections (?limit=, ?state=), /api/connections/stats
- /api/processes (?limit=), /api/hosts (?limit=)
- /api/intel/alerts, /api/intel/anomalies (?limit=), /api/intel/stats, /api/intel/connections
"""

from __future__ import annotations

import logging

from flask import Flask, jsonify, request

from acquisition.models import ConnectionState
from app.scheduler import MonitorService
from dashboard.config import Config, load_config

log = logging.getLogger("netsentry.dashboard")

# single waitress optional block, flask's dev server otherwise
try:
    from waitress import serve as _serve  # type: ignore[import-untyped]

    HAVE_WAITRESS = True
except ImportError:
    HAVE_WAITRESS = False
    _serve = None  # type: ignore


def _int_arg(name: str, default: int, upper: int = 10_000) -> int:
    raw = request.args.get(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(0, min(value, upper))


def build_app(service: MonitorService) -> Flask:
    app = Flask(__name__)

    @app.errorhandler(404)
    def not_found(err):
        return jsonify({"ok": False, "error": "not found"}), 404

    # ping endpoint: liveness for scripts and the smoke tests
    @app.get("/api/ping")
    def ping():
        return jsonify({"ok": True, "cycles": service.cycles})

    @app.get("/api/status")
    def status():
        return jsonify(service.status())

    # interface throughput
    @app.get("/api/interfaces")
    def interfaces():
        return jsonify(service.interfaces_snapshot())

    @app.get("/api/interfaces/<name>")
    def interface(name: str):
        try:
            return jsonify(service.interface_snapshot(name))
        except KeyError:
            return jsonify({"ok": False, "error": f"Device not found: {name}"}), 404

    # sockets
    @app.get("/api/connections")
    def connections():
        records = service.acquisition.connections()
        state = (request.args.get("state") or "").strip()
        if state:
            wanted = ConnectionState.from_name(state)
            records = [r for r in records if r.state is wanted]
        limit = _int_arg("limit", service.max_connections)
        return jsonify(
            {
                "source": service.acquisition.last_source,
                "count": len(records),
                "connections": [r.to_dict() for r in records[:limit]],
            }
        )

    @app.get("/api/connections/stats")
    def connection_stats():
        return jsonify(service.acquisition.connection_stats().to_dict())

    # processes and top talkers
    @app.get("/api/processes")
    def processes():
        limit = _int_arg("limit", 50)
        return jsonify(
            {
                "totals": service.acquisition.process_monitor.totals(),
                "processes": [p.to_dict() for p in service.acquisition.top_network_processes(limit)],
            }
        )

    @app.get("/api/hosts")
    def hosts():
        limit = _int_arg("limit", 10)
        return jsonify(
            {
                "remote_hosts": [{"ip": ip, "connections": n} for ip, n in service.acquisition.top_remote_hosts(limit)],
                "processes": [{"name": name, "connections": n} for name, n in service.acquisition.top_processes(limit)],
            }
        )

    # threat intelligence
    @app.get("/api/intel/alerts")
    def intel_alerts():
        return jsonify(service.port_scan_alerts())

    @app.get("/api/intel/anomalies")
    def intel_anomalies():
        return jsonify(service.recent_anomalies(_int_arg("limit", 50, upper=1_000)))

    @app.get("/api/intel/stats")
    def intel_stats():
        return jsonify(service.intel_stats())

    @app.get("/api/intel/connections")
    def intel_connections():
        suspicious_only = (request.args.get("suspicious") or "").lower() in ("1", "true", "yes")
        results = service.intelligence()
        if suspicious_only:
            results = [i for i in results if i.is_suspicious]
        return jsonify([i.to_dict() for i in results[: _int_arg("limit", 200)]])

    return app


def run_dashboard(service: MonitorService, cfg: Config | None = None) -> None:
    cfg = cfg or load_config()
    app = build_app(service)
    log.info("dashboard listening on http://%s:%s", cfg.host, cfg.port)
    if HAVE_WAITRESS:
        try:
            _serve(app, host=cfg.host, port=cfg.port)
        except (SystemExit, KeyboardInterrupt):
            pass  # expected when shutting down
    else:
        try:
            app.run(host=cfg.host, port=cfg.port, debug=False)
        except (SystemExit, KeyboardInterrupt):
            pass  # expected when shutting down
