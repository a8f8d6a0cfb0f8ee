# SPDX-License-Identifier: GPL-3.0-or-later
"""
goal: turn successive cumulative interface counters into throughput. one RateWindow per interface keeps the
current, window-average, min and max speed per direction, plus a short chart buffer of (age_seconds, speed) points.

per add_sample():
1. speed = wrap-aware counter delta / dt against the previous sample (only when dt > 0)
2. min/max track every computed speed except the very first one
3. chart points age by dt, anything older than 60s goes, a fresh point enters at age 0, at most 120 per direction
4. the sample joins the history, which is trimmed to [latest - window_size, latest]
5. the window average comes from the oldest and newest retained samples

nothing here does I/O or raises; callers own locking (one window per interface, never shared unlocked).
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Any

from acquisition.models import InterfaceSample

log = logging.getLogger("netsentry.analysis")

U32_MAX = 2**32 - 1
U64_MAX = 2**64 - 1
CHART_MAX_AGE_SEC = 60.0
CHART_MAX_POINTS = 120
DEFAULT_WINDOW_SEC = 300.0


def counter_delta(current: int, previous: int) -> int:
    """bytes moved between two readings of a counter that may have wrapped at 32 or 64 bits."""
    if current >= previous:
        return current - previous
    diff64 = U64_MAX - previous + current + 1
    if previous <= U32_MAX:
        diff32 = U32_MAX - previous + current + 1
        # 32-bit wraps are far more common; take it unless it is implausibly close to the 64-bit answer
        if diff32 < diff64 // 1000:
            return diff32
    return diff64


class RateWindow:
    def __init__(self, window_size: float = DEFAULT_WINDOW_SEC) -> None:
        self.window_size = float(window_size)
        self.reset()

    def reset(self) -> None:
        self._history: deque[InterfaceSample] = deque()
        self._graph_in: deque[tuple[float, float]] = deque()
        self._graph_out: deque[tuple[float, float]] = deque()
        self._current = (0.0, 0.0)
        self._average = (0.0, 0.0)
        self._min_in: float | None = None
        self._min_out: float | None = None
        self._max_in: float | None = None
        self._max_out: float | None = None
        self._speeds_computed = 0

    def add_sample(self, sample: InterfaceSample) -> None:
        previous = self._history[-1] if self._history else None
        if previous is not None and sample.timestamp < previous.timestamp:
            log.debug("ignoring out-of-order sample for %s (%.3f < %.3f)", sample.name, sample.timestamp, previous.timestamp)
            return

        if previous is not None:
            dt = sample.timestamp - previous.timestamp
            if dt > 0:
                speed_in = counter_delta(sample.bytes_in, previous.bytes_in) / dt
                speed_out = counter_delta(sample.bytes_out, previous.bytes_out) / dt
                self._current = (speed_in, speed_out)
                if self._speeds_computed > 0:
                    self._track_extremes(speed_in, speed_out)
                self._speeds_computed += 1
                self._push_chart(self._graph_in, dt, speed_in)
                self._push_chart(self._graph_out, dt, speed_out)

        self._history.append(sample)
        cutoff = sample.timestamp - self.window_size
        while self._history and self._history[0].timestamp < cutoff:
            self._history.popleft()
        self._recompute_average()

    def _track_extremes(self, speed_in: float, speed_out: float) -> None:
        if self._min_in is None or speed_in < self._min_in:
            self._min_in = speed_in
        if self._min_out is None or speed_out < self._min_out:
            self._min_out = speed_out
        if self._max_in is None or speed_in > self._max_in:
            self._max_in = speed_in
        if self._max_out is None or speed_out > self._max_out:
            self._max_out = speed_out

    @staticmethod
    def _push_chart(points: deque[tuple[float, float]], dt: float, speed: float) -> None:
        aged = [(age + dt, value) for age, value in points if age + dt <= CHART_MAX_AGE_SEC]
        points.clear()
        points.extend(aged)
        points.append((0.0, speed))
        while len(points) > CHART_MAX_POINTS:
            points.popleft()

    def _recompute_average(self) -> None:
        if len(self._history) < 2:
            return
        first, last = self._history[0], self._history[-1]
        span = last.timestamp - first.timestamp
        if span <= 0:
            return
        self._average = (
            counter_delta(last.bytes_in, first.bytes_in) / span,
            counter_delta(last.bytes_out, first.bytes_out) / span,
        )

    # getters, (in, out) pairs in bytes per second unless noted

    def current_speed(self) -> tuple[float, float]:
        return self._current

    def average_speed(self) -> tuple[float, float]:
        return self._average

    def min_speed(self) -> tuple[float, float]:
        return (self._min_in or 0.0, self._min_out or 0.0)

    def max_speed(self) -> tuple[float, float]:
        return (self._max_in or 0.0, self._max_out or 0.0)

    def total_bytes(self) -> tuple[int, int]:
        if not self._history:
            return (0, 0)
        last = self._history[-1]
        return (last.bytes_in, last.bytes_out)

    def total_packets(self) -> tuple[int, int]:
        if not self._history:
            return (0, 0)
        last = self._history[-1]
        return (last.packets_in, last.packets_out)

    def graph_data_in(self) -> list[tuple[float, float]]:
        return list(self._graph_in)

    def graph_data_out(self) -> list[tuple[float, float]]:
        return list(self._graph_out)

    def sample_count(self) -> int:
        return len(self._history)

    def history(self) -> list[InterfaceSample]:
        return list(self._history)

    def latest(self) -> InterfaceSample | None:
        return self._history[-1] if self._history else None

    def snapshot(self) -> dict[str, Any]:
        latest = self.latest()
        return {
            "current": {"in": self._current[0], "out": self._current[1]},
            "average": {"in": self._average[0], "out": self._average[1]},
            "min": dict(zip(("in", "out"), self.min_speed())),
            "max": dict(zip(("in", "out"), self.max_speed())),
            "total_bytes": dict(zip(("in", "out"), self.total_bytes())),
            "total_packets": dict(zip(("in", "out"), self.total_packets())),
            "errors": {"in": latest.errors_in, "out": latest.errors_out} if latest else {"in": 0, "out": 0},
            "drops": {"in": latest.drops_in, "out": latest.drops_out} if latest else {"in": 0, "out": 0},
            "samples": len(self._history),
            "window_sec": self.window_size,
            "graph_in": [list(p) for p in self._graph_in],
            "graph_out": [list(p) for p in self._graph_out],
            "updated_at": latest.timestamp if latest else None,
        }
