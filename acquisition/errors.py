# SPDX-License-Identifier: GPL-3.0-or-later
"""
goal: exception types shared by the acquisition layer. source failures are recovered locally through the
fallback chain, single bad lines are skipped, and only device-level problems ever reach the caller.
"""

from __future__ import annotations


class NetSentryError(Exception):
    """base class for every error raised by NetSentry code."""


class SourceUnavailable(NetSentryError):
    """a command or kernel file is missing, failed, timed out, or gave unusable output."""

    def __init__(self, source: str, reason: str = "") -> None:
        self.source = source  # which command or file we tried
        self.reason = reason  # short human reason (exit code, timeout, missing binary)
        super().__init__(f"{source} unavailable: {reason}" if reason else f"{source} unavailable")


class ParseSkip(NetSentryError):
    """one malformed record inside an otherwise valid dump. the line is dropped and parsing continues."""


class DeviceNotFound(NetSentryError):
    """a named interface has no matching row in the counter source."""

    def __init__(self, device: str) -> None:
        self.device = device
        super().__init__(f"Device not found: {device}")


class NoDevicesFound(NetSentryError):
    """interface enumeration returned nothing to monitor."""

    def __init__(self) -> None:
        super().__init__("No network interfaces found")


class InvalidInterfaceName(NetSentryError):
    """a user supplied interface name that no kernel would accept, rejected before any lookup."""

    def __init__(self, device: str, reason: str) -> None:
        self.device = device
        self.reason = reason
        super().__init__(f"Invalid interface name {device!r}: {reason}")
