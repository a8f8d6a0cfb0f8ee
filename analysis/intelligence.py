# SPDX-License-Identifier: GPL-3.0-or-later
"""
goal: score connections for threat signals and spot port scans across connections.

analyze_connection() classifies one ConnectionRecord:
- direction: outbound when the local address is internal
- geo: cached per remote ip, internal addresses short-circuit to a synthetic record, the provider fills misses
- service: well-known port table on the privileged side, else System/Registered/Dynamic tiers
- indicators: port scan (detector confidence > 0.7), known-bad remote port, > 10 MB/s average, flagged geo,
  connections open for an hour or more, more than 20 distinct connections with one remote ip inside a minute

detect_port_scan() keeps one ScanDetector per source ip. detectors older than 5 minutes are dropped on every call.

the engine holds mutable caches and is not thread safe; the scheduler serializes access with a lock.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from acquisition.models import ConnectionRecord
from analysis.geo import INTERNAL_GEO, GeoInfo, GeoLookupError, GeoProvider, StaticGeoProvider, ThreatLevel, is_internal_ip

log = logging.getLogger("netsentry.analysis")

SCAN_CONFIDENCE_THRESHOLD = 0.7
SCAN_DETECTOR_TTL_SEC = 300.0
COMMON_SCAN_PORTS = frozenset({22, 23, 80, 443, 21, 25, 53, 110, 143, 993, 995, 3389})
SUSPICIOUS_PORTS = frozenset({1337, 31337, 12345, 54321, 6667, 6668, 6669})
HIGH_BANDWIDTH_BPS = 10_000_000  # bytes per second
LONG_LIVED_SEC = 3600.0
RAPID_WINDOW_SEC = 60.0
RAPID_CONNECTION_LIMIT = 20
HISTORY_LIMIT = 10_000
ANOMALY_LIMIT = 1_000
ANOMALY_REPEAT_SEC = 60.0  # same anomaly for the same endpoint is reported at most once a minute

KNOWN_SERVICES: dict[int, str] = {
    22: "SSH",
    23: "Telnet",
    25: "SMTP",
    53: "DNS",
    80: "HTTP",
    110: "POP3",
    143: "IMAP",
    443: "HTTPS",
    993: "IMAPS",
    995: "POP3S",
    3389: "RDP",
    5432: "PostgreSQL",
    3306: "MySQL",
    27017: "MongoDB",
    6379: "Redis",
    9200: "Elasticsearch",
    8080: "HTTP-Alt",
    8443: "HTTPS-Alt",
    # ports favoured by malware
    1337: "Elite/Leet (Suspicious)",
    31337: "Back Orifice (Malware)",
    12345: "NetBus (Malware)",
    54321: "Back Orifice 2000 (Malware)",
}


class IndicatorKind(Enum):
    PORT_SCAN_ATTEMPT = "PortScanAttempt"
    SUSPICIOUS_PORT = "SuspiciousPort"
    GEO_ANOMALY = "GeoAnomaly"
    HIGH_BANDWIDTH_USAGE = "HighBandwidthUsage"
    RAPID_CONNECTIONS = "RapidConnections"
    LONG_LIVED_CONNECTION = "LongLivedConnection"


class AnomalyType(Enum):
    PORT_SCAN = "PortScan"
    SUSPICIOUS_PROTOCOL = "SuspiciousProtocol"
    UNUSUAL_GEO_LOCATION = "UnusualGeoLocation"
    BANDWIDTH_ANOMALY = "BandwidthAnomaly"
    CONNECTION_FLOOD = "ConnectionFlood"


class Severity(Enum):
    INFO = "Info"
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    CRITICAL = "Critical"


@dataclass
class ThreatIndicator:
    kind: IndicatorKind
    detail: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind.value, **self.detail}


@dataclass
class ScanDetector:
    scanner_ip: str
    ports_scanned: set[int]
    scan_start_time: float
    scan_duration: float = 0.0
    scan_rate: float = 0.0  # ports per second
    confidence: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "scanner_ip": self.scanner_ip,
            "ports_scanned": sorted(self.ports_scanned),
            "port_count": len(self.ports_scanned),
            "scan_start_time": self.scan_start_time,
            "scan_duration": self.scan_duration,
            "scan_rate": self.scan_rate,
            "confidence": self.confidence,
        }


@dataclass
class ConnectionIntelligence:
    remote_ip: str
    local_port: int
    remote_port: int
    protocol: str
    service_name: str
    geo_info: GeoInfo | None
    connection_duration: float
    bytes_transferred: int
    first_seen: float
    last_activity: float
    is_outbound: bool
    threat_indicators: list[ThreatIndicator] = field(default_factory=list)

    @property
    def is_suspicious(self) -> bool:
        return bool(self.threat_indicators)

    def to_dict(self) -> dict[str, Any]:
        return {
            "remote_ip": self.remote_ip,
            "local_port": self.local_port,
            "remote_port": self.remote_port,
            "protocol": self.protocol,
            "service_name": self.service_name,
            "geo_info": self.geo_info.to_dict() if self.geo_info else None,
            "connection_duration": self.connection_duration,
            "bytes_transferred": self.bytes_transferred,
            "first_seen": self.first_seen,
            "last_activity": self.last_activity,
            "direction": "outbound" if self.is_outbound else "inbound",
            "threat_indicators": [i.to_dict() for i in self.threat_indicators],
        }


@dataclass
class NetworkAnomaly:
    anomaly_type: AnomalyType
    severity: Severity
    description: str
    affected_ip: str | None
    affected_port: int | None
    detected_at: float
    confidence: float
    metrics: dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "anomaly_type": self.anomaly_type.value,
            "severity": self.severity.value,
            "description": self.description,
            "affected_ip": self.affected_ip,
            "affected_port": self.affected_port,
            "detected_at": self.detected_at,
            "confidence": self.confidence,
            "metrics": dict(self.metrics),
        }


@dataclass
class IntelStats:
    total_connections: int = 0
    external_connections: int = 0
    suspicious_connections: int = 0
    unique_countries: int = 0
    active_port_scans: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "total_connections": self.total_connections,
            "external_connections": self.external_connections,
            "suspicious_connections": self.suspicious_connections,
            "unique_countries": self.unique_countries,
            "active_port_scans": self.active_port_scans,
        }


def identify_service(local_port: int, remote_port: int) -> str:
    port = local_port if local_port < 1024 else remote_port
    name = KNOWN_SERVICES.get(port)
    if name:
        return name
    if port < 1024:
        return "System Service"
    if port < 49152:
        return "Registered Service"
    return "Dynamic/Ephemeral"


def longest_sequential_run(ports: set[int]) -> int:
    ordered = sorted(ports)
    if not ordered:
        return 0
    best = run = 1
    for prev, cur in zip(ordered, ordered[1:]):
        run = run + 1 if cur == prev + 1 else 1
        best = max(best, run)
    return best


def scan_confidence(detector: ScanDetector) -> float:
    count = len(detector.ports_scanned)
    confidence = 0.4 * min(count / 20.0, 1.0)
    if detector.scan_rate > 10.0:
        confidence += 0.3
    elif detector.scan_rate > 1.0:
        confidence += 0.2
    if longest_sequential_run(detector.ports_scanned) >= 5:
        confidence += 0.2
    if len(detector.ports_scanned & COMMON_SCAN_PORTS) > 3:
        confidence += 0.1
    return min(confidence, 1.0)


class IntelligenceEngine:
    def __init__(self, geo_provider: GeoProvider | None = None, clock: Callable[[], float] = time.time) -> None:
        self.geo_provider: GeoProvider = geo_provider or StaticGeoProvider()
        self._clock = clock
        self._history: deque[ConnectionIntelligence] = deque(maxlen=HISTORY_LIMIT)
        self._anomalies: deque[NetworkAnomaly] = deque(maxlen=ANOMALY_LIMIT)
        self._geo_cache: dict[str, GeoInfo] = {}
        self._detectors: dict[str, ScanDetector] = {}
        self._recent_peers: dict[str, dict[tuple[int, int, str], float]] = {}  # remote ip -> connection -> last seen
        self._last_reported: dict[tuple[AnomalyType, str | None, int | None], float] = {}

    # analysis

    def analyze_connection(self, record: ConnectionRecord) -> ConnectionIntelligence:
        now = self._clock()
        remote_ip, remote_port = record.remote_ip, record.remote_port
        geo = self.geo_info(remote_ip)
        duration = record.socket_info.duration or 0.0

        indicators: list[ThreatIndicator] = []

        detector = self.detect_port_scan(remote_ip, remote_port)
        if detector is not None:
            indicators.append(
                ThreatIndicator(
                    IndicatorKind.PORT_SCAN_ATTEMPT,
                    {"ports_scanned": len(detector.ports_scanned), "time_window": detector.scan_duration},
                )
            )

        if remote_port in SUSPICIOUS_PORTS:
            indicators.append(
                ThreatIndicator(
                    IndicatorKind.SUSPICIOUS_PORT, {"port": remote_port, "reason": "Known malicious or uncommon port"}
                )
            )

        if duration > 0:
            bandwidth = record.total_bytes / duration
            if bandwidth > HIGH_BANDWIDTH_BPS:
                indicators.append(
                    ThreatIndicator(
                        IndicatorKind.HIGH_BANDWIDTH_USAGE, {"bandwidth": int(bandwidth), "threshold": HIGH_BANDWIDTH_BPS}
                    )
                )

        if geo is not None and (geo.is_suspicious or geo.threat_level is not ThreatLevel.CLEAN):
            indicators.append(
                ThreatIndicator(
                    IndicatorKind.GEO_ANOMALY,
                    {
                        "country": geo.country,
                        "threat_level": geo.threat_level.value,
                        "reason": "Connection from suspicious geographic location",
                    },
                )
            )

        if duration >= LONG_LIVED_SEC:
            indicators.append(ThreatIndicator(IndicatorKind.LONG_LIVED_CONNECTION, {"duration": duration}))

        peers = self._note_peer(record, now)
        if peers > RAPID_CONNECTION_LIMIT:
            indicators.append(
                ThreatIndicator(IndicatorKind.RAPID_CONNECTIONS, {"count": peers, "time_window": RAPID_WINDOW_SEC})
            )

        intel = ConnectionIntelligence(
            remote_ip=remote_ip,
            local_port=record.local_port,
            remote_port=remote_port,
            protocol=record.protocol.value,
            service_name=identify_service(record.local_port, remote_port),
            geo_info=geo,
            connection_duration=duration,
            bytes_transferred=record.total_bytes,
            first_seen=now - duration,
            last_activity=now,
            is_outbound=is_internal_ip(record.local_ip),
            threat_indicators=indicators,
        )
        self._history.append(intel)
        for indicator in indicators:
            self._raise_anomaly(indicator, intel, detector, now)
        return intel

    def geo_info(self, ip: str) -> GeoInfo | None:
        cached = self._geo_cache.get(ip)
        if cached is not None:
            return cached
        if is_internal_ip(ip):
            self._geo_cache[ip] = INTERNAL_GEO
            return INTERNAL_GEO
        try:
            info = self.geo_provider.lookup(ip)
        except GeoLookupError as exc:
            log.debug("geo lookup failed for %s: %s", ip, exc)
            return None  # not cached, the next call retries
        self._geo_cache[ip] = info
        return info

    def _note_peer(self, record: ConnectionRecord, now: float) -> int:
        # distinct connections with this remote ip seen inside the rapid window
        seen = self._recent_peers.setdefault(record.remote_ip, {})
        seen[(record.local_port, record.remote_port, record.protocol.value)] = now
        cutoff = now - RAPID_WINDOW_SEC
        for key in [k for k, ts in seen.items() if ts < cutoff]:
            del seen[key]
        # forget idle peers so the map does not grow forever
        for ip in [ip for ip, conns in self._recent_peers.items() if not conns or max(conns.values()) < cutoff]:
            del self._recent_peers[ip]
        return len(seen)

    def detect_port_scan(self, source_ip: str, port: int) -> ScanDetector | None:
        now = self._clock()
        cutoff = now - SCAN_DETECTOR_TTL_SEC
        for ip in [ip for ip, d in self._detectors.items() if d.scan_start_time < cutoff]:
            del self._detectors[ip]

        detector = self._detectors.get(source_ip)
        if detector is None:
            detector = ScanDetector(scanner_ip=source_ip, ports_scanned={port}, scan_start_time=now)
            self._detectors[source_ip] = detector
        else:
            detector.ports_scanned.add(port)
            detector.scan_duration = now - detector.scan_start_time
            if detector.scan_duration > 0:
                detector.scan_rate = len(detector.ports_scanned) / detector.scan_duration
        detector.confidence = scan_confidence(detector)

        if detector.confidence > SCAN_CONFIDENCE_THRESHOLD:
            return detector
        return None

    def _raise_anomaly(
        self,
        indicator: ThreatIndicator,
        intel: ConnectionIntelligence,
        detector: ScanDetector | None,
        now: float,
    ) -> None:
        kind = indicator.kind
        ip, port = intel.remote_ip, intel.remote_port
        if kind is IndicatorKind.PORT_SCAN_ATTEMPT and detector is not None:
            anomaly = NetworkAnomaly(
                AnomalyType.PORT_SCAN,
                Severity.HIGH,
                f"Port scan from {ip}: {len(detector.ports_scanned)} ports in {detector.scan_duration:.1f}s",
                ip,
                None,
                now,
                detector.confidence,
                {"ports": float(len(detector.ports_scanned)), "rate": detector.scan_rate},
            )
        elif kind is IndicatorKind.SUSPICIOUS_PORT:
            anomaly = NetworkAnomaly(
                AnomalyType.SUSPICIOUS_PROTOCOL,
                Severity.MEDIUM,
                f"Connection to suspicious port {port} ({intel.service_name})",
                ip,
                port,
                now,
                0.8,
            )
        elif kind is IndicatorKind.HIGH_BANDWIDTH_USAGE:
            anomaly = NetworkAnomaly(
                AnomalyType.BANDWIDTH_ANOMALY,
                Severity.MEDIUM,
                f"High bandwidth with {ip}:{port}",
                ip,
                port,
                now,
                0.7,
                {"bandwidth": float(indicator.detail["bandwidth"])},
            )
        elif kind is IndicatorKind.GEO_ANOMALY:
            level = intel.geo_info.threat_level if intel.geo_info else ThreatLevel.SUSPICIOUS
            anomaly = NetworkAnomaly(
                AnomalyType.UNUSUAL_GEO_LOCATION,
                Severity.HIGH if level in (ThreatLevel.MALICIOUS, ThreatLevel.CRITICAL) else Severity.MEDIUM,
                f"Connection with flagged address {ip} ({level.value})",
                ip,
                port,
                now,
                0.9,
            )
        elif kind is IndicatorKind.RAPID_CONNECTIONS:
            anomaly = NetworkAnomaly(
                AnomalyType.CONNECTION_FLOOD,
                Severity.MEDIUM,
                f"{indicator.detail['count']} connections with {ip} in the last minute",
                ip,
                None,
                now,
                0.6,
                {"count": float(indicator.detail["count"])},
            )
        else:
            return  # long lived connections are reported on the intelligence only

        key = (anomaly.anomaly_type, anomaly.affected_ip, anomaly.affected_port)
        last = self._last_reported.get(key)
        if last is not None and now - last < ANOMALY_REPEAT_SEC:
            return
        self._last_reported[key] = now
        for stale in [k for k, ts in self._last_reported.items() if now - ts >= ANOMALY_REPEAT_SEC]:
            del self._last_reported[stale]
        self._anomalies.append(anomaly)
        log.warning("%s: %s", anomaly.anomaly_type.value, anomaly.description)

    # accessors

    def scan_detector(self, source_ip: str) -> ScanDetector | None:
        return self._detectors.get(source_ip)

    def port_scan_alerts(self) -> list[ScanDetector]:
        return [d for d in self._detectors.values() if d.confidence > SCAN_CONFIDENCE_THRESHOLD]

    def recent_anomalies(self, limit: int = 10) -> list[NetworkAnomaly]:
        """newest first."""
        return list(reversed(self._anomalies))[:limit]

    def connection_stats(self) -> IntelStats:
        history = self._history
        return IntelStats(
            total_connections=len(history),
            external_connections=sum(1 for c in history if c.geo_info is not None and not c.geo_info.is_internal),
            suspicious_connections=sum(1 for c in history if c.threat_indicators),
            unique_countries=len({c.geo_info.country for c in history if c.geo_info and not c.geo_info.is_internal}),
            active_port_scans=len(self.port_scan_alerts()),
        )

    def history(self, limit: int | None = None) -> list[ConnectionIntelligence]:
        items = list(self._history)
        if limit is None:
            return items
        return items[-limit:] if limit > 0 else []

    def clear_geo_cache(self) -> None:
        self._geo_cache.clear()
