# SPDX-License-Identifier: GPL-3.0-or-later
"""
goal: the only place that touches the OS for raw text. runs system utilities with a hard timeout and reads
kernel text files, turning every failure (missing binary, non-zero exit, timeout, unreadable file) into
SourceUnavailable so callers can move on to the next source in their fallback chain.
"""

from __future__ import annotations

import logging
import subprocess
from collections.abc import Sequence

from acquisition.errors import SourceUnavailable

log = logging.getLogger("netsentry.acquisition")

DEFAULT_TIMEOUT_SEC = 2.0  # interactive polling cadence, a hung utility must not stall a cycle


def run_command(args: Sequence[str], timeout: float = DEFAULT_TIMEOUT_SEC) -> str:
    """run a system utility and return its stdout, or raise SourceUnavailable."""
    name = args[0] if args else "<empty>"
    try:
        proc = subprocess.run(
            list(args),
            capture_output=True,
            text=True,
            errors="replace",  # some tools print raw bytes in process names
            timeout=timeout,
            check=False,
        )
    except FileNotFoundError as exc:
        raise SourceUnavailable(name, "command not found") from exc
    except subprocess.TimeoutExpired as exc:
        raise SourceUnavailable(name, f"timed out after {timeout:.1f}s") from exc
    except OSError as exc:  # permission denied, exec format error, etc
        raise SourceUnavailable(name, str(exc)) from exc

    if proc.returncode != 0:
        raise SourceUnavailable(name, f"exit status {proc.returncode}")
    log.debug("%s produced %d bytes", name, len(proc.stdout))
    return proc.stdout


def read_text(path: str) -> str:
    """read a kernel text table, or raise SourceUnavailable."""
    try:
        with open(path, encoding="utf-8", errors="replace") as f:
            return f.read()
    except OSError as exc:
        raise SourceUnavailable(path, exc.strerror or str(exc)) from exc
