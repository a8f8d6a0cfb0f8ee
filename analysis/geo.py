# SPDX-License-Identifier: GPL-3.0-or-later
"""
goal: internal-network classification and the pluggable geo/threat lookup seam.

is_internal_ip() is a pure function of the fixed CIDR table below. the default provider never resolves anything:
every address is "Unknown", and only addresses in a static suspicious set are flagged (Malicious). swap in another
GeoProvider to wire a real database.
"""

from __future__ import annotations

import ipaddress
import json
import logging
from collections.abc import Iterable
from dataclasses import asdict, dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Protocol

from acquisition.errors import NetSentryError

log = logging.getLogger("netsentry.analysis")

# RFC1918, loopback, IPv6 unique local
INTERNAL_NETWORKS = tuple(
    ipaddress.ip_network(cidr) for cidr in ("10.0.0.0/8", "172.16.0.0/12", "192.168.0.0/16", "127.0.0.0/8", "fc00::/7")
)


class GeoLookupError(NetSentryError):
    """a geo provider could not classify an address."""


class ThreatLevel(Enum):
    CLEAN = "Clean"
    SUSPICIOUS = "Suspicious"
    MALICIOUS = "Malicious"
    CRITICAL = "Critical"


@dataclass(frozen=True)
class GeoInfo:
    country: str
    country_code: str
    city: str
    region: str
    is_internal: bool = False
    is_suspicious: bool = False
    threat_level: ThreatLevel = ThreatLevel.CLEAN
    organization: str = "Unknown"
    asn: int = 0

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["threat_level"] = self.threat_level.value
        return d


INTERNAL_GEO = GeoInfo(
    country="Internal",
    country_code="INT",
    city="Local Network",
    region="Private",
    is_internal=True,
    organization="Internal Network",
)


def is_internal_ip(ip: str) -> bool:
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return False
    return any(addr.version == net.version and addr in net for net in INTERNAL_NETWORKS)


class GeoProvider(Protocol):
    def lookup(self, ip: str) -> GeoInfo: ...


class StaticGeoProvider:
    """no real resolution: Unknown for everyone, Malicious for addresses on the static list."""

    def __init__(self, suspicious_ips: Iterable[str] = ()) -> None:
        self.suspicious_ips = {str(ip).strip() for ip in suspicious_ips if str(ip).strip()}

    @classmethod
    def from_file(cls, path: str | Path) -> StaticGeoProvider:
        """load a JSON list of addresses. a missing or unreadable list means no flagged addresses."""
        p = Path(path)
        try:
            data = json.loads(p.read_text(encoding="utf-8"))
        except FileNotFoundError:
            log.debug("no suspicious ip list at %s", p)
            return cls()
        except (OSError, ValueError) as exc:
            log.warning("ignoring unreadable suspicious ip list %s: %s", p, exc)
            return cls()
        if not isinstance(data, list):
            log.warning("suspicious ip list %s is not a JSON list, ignoring it", p)
            return cls()
        return cls(data)

    def lookup(self, ip: str) -> GeoInfo:
        flagged = ip in self.suspicious_ips
        return GeoInfo(
            country="Unknown",
            country_code="UN",
            city="Unknown",
            region="Unknown",
            is_suspicious=flagged,
            threat_level=ThreatLevel.MALICIOUS if flagged else ThreatLevel.CLEAN,
        )
