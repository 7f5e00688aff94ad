"""
Metrics collection for coordinated polling.

This module tracks per-cycle, per-session and aggregate call statistics that
feed the session facade's unified metrics snapshot.
"""

import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any

import structlog

from .request_manager import Clock

logger = structlog.get_logger(__name__)


@dataclass
class PollingCycleMetrics:
    """Metrics for a single coordinated polling cycle."""

    cycle_id: str
    start_time: float
    end_time: float | None = None
    sessions_polled: int = 0
    devices_requested: int = 0
    positions_received: int = 0
    api_calls: int = 0
    failed_calls: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def duration_seconds(self) -> float:
        """Get cycle duration in seconds."""
        if self.end_time is not None:
            return self.end_time - self.start_time
        return 0.0


@dataclass
class SessionMetrics:
    """Metrics for one polling session."""

    session_id: str
    last_poll_time: float | None = None
    total_polls: int = 0
    successful_polls: int = 0
    failed_polls: int = 0
    total_positions: int = 0
    consecutive_empty_polls: int = 0
    average_latency: float = 0.0
    last_error: str | None = None

    def update_poll_metrics(
        self, now: float, latency: float, positions: int, error: str | None = None
    ) -> None:
        """Update metrics after a poll."""
        self.last_poll_time = now
        self.total_polls += 1
        self.total_positions += positions
        self.average_latency = (
            self.average_latency * (self.total_polls - 1) + latency
        ) / self.total_polls

        if error:
            self.failed_polls += 1
            self.last_error = error
        else:
            self.successful_polls += 1

        if positions == 0:
            self.consecutive_empty_polls += 1
        else:
            self.consecutive_empty_polls = 0


class PerformanceTracker:
    """Tracks call latency over time."""

    def __init__(self, max_history: int = 100):
        self.max_history = max_history
        self.latencies: deque = deque(maxlen=max_history)
        self.cycle_times: deque = deque(maxlen=max_history)

    def record_call(self, latency: float) -> None:
        self.latencies.append(latency)

    def record_cycle(self, metrics: PollingCycleMetrics) -> None:
        if metrics.end_time is not None:
            self.cycle_times.append(metrics.duration_seconds)

    def get_averages(self) -> dict[str, float]:
        """Get average performance metrics."""
        return {
            "avg_latency": (
                sum(self.latencies) / len(self.latencies) if self.latencies else 0.0
            ),
            "avg_cycle_time": (
                sum(self.cycle_times) / len(self.cycle_times)
                if self.cycle_times
                else 0.0
            ),
        }

    def get_percentiles(self) -> dict[str, float]:
        """Get latency percentiles."""
        if not self.latencies:
            return {}

        sorted_latencies = sorted(self.latencies)
        n = len(sorted_latencies)

        return {
            "p50_latency": sorted_latencies[n // 2],
            "p90_latency": sorted_latencies[int(n * 0.9)],
            "p99_latency": sorted_latencies[int(n * 0.99)],
        }


class PollingMetricsCollector:
    """
    Collector for coordinated polling metrics.

    One instance is owned by each session facade; call counts here are
    vendor calls made on behalf of sessions, not session callbacks.
    """

    def __init__(self, clock: Clock = time.monotonic) -> None:
        self._clock = clock
        self.start_time = clock()
        self.session_metrics: dict[str, SessionMetrics] = {}
        self.cycle_history: deque[PollingCycleMetrics] = deque(maxlen=50)
        self.current_cycle: PollingCycleMetrics | None = None
        self.performance_tracker = PerformanceTracker()

        self.total_cycles = 0
        self.total_calls = 0
        self.successful_calls = 0
        self.failed_calls = 0
        self.total_positions = 0

    def start_cycle(self, cycle_id: str) -> PollingCycleMetrics:
        """Start a new polling cycle."""
        if self.current_cycle and self.current_cycle.end_time is None:
            self.end_cycle()

        self.current_cycle = PollingCycleMetrics(
            cycle_id=cycle_id, start_time=self._clock()
        )
        return self.current_cycle

    def end_cycle(self) -> PollingCycleMetrics | None:
        """End the current polling cycle."""
        if not self.current_cycle:
            return None

        cycle = self.current_cycle
        cycle.end_time = self._clock()
        self.total_cycles += 1
        self.performance_tracker.record_cycle(cycle)
        self.cycle_history.append(cycle)
        self.current_cycle = None

        logger.debug(
            "Completed polling cycle",
            cycle_id=cycle.cycle_id,
            duration=cycle.duration_seconds,
            sessions=cycle.sessions_polled,
            positions=cycle.positions_received,
        )
        return cycle

    def record_call(
        self, latency: float, success: bool, positions: int = 0, devices: int = 0
    ) -> None:
        """Record one vendor call made for polling."""
        self.total_calls += 1
        self.performance_tracker.record_call(latency)
        if success:
            self.successful_calls += 1
            self.total_positions += positions
        else:
            self.failed_calls += 1

        if self.current_cycle:
            self.current_cycle.api_calls += 1
            self.current_cycle.devices_requested += devices
            self.current_cycle.positions_received += positions
            if not success:
                self.current_cycle.failed_calls += 1

    def record_session_poll(
        self,
        session_id: str,
        latency: float,
        positions: int,
        error: str | None = None,
    ) -> None:
        """Record metrics for a session poll."""
        metrics = self.session_metrics.get(session_id)
        if metrics is None:
            metrics = SessionMetrics(session_id=session_id)
            self.session_metrics[session_id] = metrics
        metrics.update_poll_metrics(self._clock(), latency, positions, error)

        if self.current_cycle:
            self.current_cycle.sessions_polled += 1
            if error:
                self.current_cycle.errors.append(f"{session_id}: {error}")

    def remove_session(self, session_id: str) -> None:
        self.session_metrics.pop(session_id, None)

    @property
    def success_rate(self) -> float:
        """Fraction of calls that succeeded (1.0 before any call)."""
        if self.total_calls == 0:
            return 1.0
        return self.successful_calls / self.total_calls

    @property
    def error_rate(self) -> float:
        if self.total_calls == 0:
            return 0.0
        return self.failed_calls / self.total_calls

    def get_session_summary(self) -> dict[str, dict[str, Any]]:
        """Get summary metrics for all sessions."""
        return {
            session_id: {
                "total_polls": metrics.total_polls,
                "successful_polls": metrics.successful_polls,
                "failed_polls": metrics.failed_polls,
                "total_positions": metrics.total_positions,
                "consecutive_empty_polls": metrics.consecutive_empty_polls,
                "average_latency": metrics.average_latency,
                "last_poll_time": metrics.last_poll_time,
                "last_error": metrics.last_error,
            }
            for session_id, metrics in self.session_metrics.items()
        }

    def get_global_summary(self) -> dict[str, Any]:
        """Get aggregate polling metrics."""
        return {
            "uptime_seconds": self._clock() - self.start_time,
            "total_cycles": self.total_cycles,
            "total_calls": self.total_calls,
            "successful_calls": self.successful_calls,
            "failed_calls": self.failed_calls,
            "success_rate": self.success_rate,
            "error_rate": self.error_rate,
            "total_positions": self.total_positions,
            "performance": {
                **self.performance_tracker.get_averages(),
                **self.performance_tracker.get_percentiles(),
            },
        }
