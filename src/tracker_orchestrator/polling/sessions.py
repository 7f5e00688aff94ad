"""
Polling session facade.

Many dashboard sessions each want a device set polled at some cadence. This
module multiplexes them into one coordinated polling loop: every tick the
devices of all due sessions are fetched together (batched through
SmartPolling and protected by the RequestManager) and each session receives
only the positions for its own devices.
"""

import asyncio
import inspect
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

import structlog

from ..config import SessionConfig
from ..events import OrchestratorEvents
from ..exceptions import EmergencyStopError, ValidationError
from .metrics import PollingMetricsCollector
from .request_manager import Clock, Priority, RequestManager, Sleep
from .smart_polling import SmartPolling

if TYPE_CHECKING:
    from ..coordinator.client import CoordinatorClient

logger = structlog.get_logger(__name__)

FOCUSED_INTERVAL = 15.0
ACTIVE_INTERVAL = 60.0
MASTER_TICKS = {
    "focused": 10.0,
    "active": 30.0,
    "background": 60.0,
    "idle": 300.0,
}


class SessionState(str, Enum):
    """Lifecycle of a registered session. Unregistered sessions are removed."""

    REGISTERED = "registered"
    POLLING = "polling"


@dataclass
class PollingUpdate:
    """Data delivered to a session callback after each poll."""

    session_id: str
    positions: list[dict[str, Any]]
    devices: list[dict[str, Any]]
    last_query_time: Any = None
    error: str | None = None


SessionCallback = Callable[[PollingUpdate], Awaitable[None] | None]


@dataclass
class PollingSession:
    """One consumer's polling requirements."""

    session_id: str
    device_ids: list[str]
    interval: float
    callback: SessionCallback
    priority: Priority = Priority.MEDIUM
    state: SessionState = SessionState.REGISTERED
    last_poll: float | None = None
    last_query_time: Any = None
    poll_count: int = 0
    error: str | None = None


@dataclass
class UserActivity:
    """A viewer watching a set of vehicles."""

    user_id: str
    vehicle_ids: set[str] = field(default_factory=set)
    is_viewing_real_time: bool = False
    registered_at: float = 0.0


def _to_epoch_seconds(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if number <= 0:
        return None
    # Vendor timestamps are epoch milliseconds
    return number / 1000.0 if number > 1e11 else number


def _unique(ids: Iterable[Any]) -> list[str]:
    return list(dict.fromkeys(str(device_id) for device_id in ids))


class PollingSessionFacade:
    """
    Coordinates polling for all registered sessions.

    A single master loop ticks at a rate set by the most demanding session
    (focused 10s, active 30s, background 60s, idle 300s). Sessions with a
    real-time viewer on any of their vehicles are treated as high priority
    and polled at least every ``realtime_interval`` seconds.

    Registering a session starts the loop unless ``auto_start`` is False, in
    which case polling is driven by ``start`` or ``poll_once``.
    """

    def __init__(
        self,
        request_manager: RequestManager,
        smart_polling: SmartPolling,
        coordinator_client: "CoordinatorClient",
        config: SessionConfig | None = None,
        events: OrchestratorEvents | None = None,
        clock: Clock = time.monotonic,
        wall_clock: Clock = time.time,
        sleep: Sleep = asyncio.sleep,
        auto_start: bool = True,
    ):
        self.request_manager = request_manager
        self.smart_polling = smart_polling
        self.coordinator_client = coordinator_client
        self.config = config or SessionConfig()
        self.events = events
        self.metrics = PollingMetricsCollector(clock=clock)
        self._clock = clock
        self._wall_clock = wall_clock
        self._sleep = sleep
        self.auto_start = auto_start

        self._sessions: dict[str, PollingSession] = {}
        self._user_activity: dict[str, UserActivity] = {}
        self.activity_map: dict[str, float] = {}
        self.cached_devices: list[dict[str, Any]] = []
        self._last_devices_fetch: float | None = None
        self._loop_task: asyncio.Task | None = None
        self._emergency_stopped = False
        self._cycle_counter = 0

    @property
    def sessions(self) -> dict[str, PollingSession]:
        return dict(self._sessions)

    @property
    def is_polling(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    @property
    def emergency_stopped(self) -> bool:
        return self._emergency_stopped

    def get_session(self, session_id: str) -> PollingSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise ValidationError(
                f"Session {session_id} not found", context={"session_id": session_id}
            )
        return session

    def register_session(
        self,
        session_id: str,
        device_ids: Iterable[Any],
        interval: float,
        callback: SessionCallback,
        priority: Priority | str = Priority.MEDIUM,
    ) -> PollingSession:
        """Register (or replace) a session and make sure the master loop runs."""
        if not session_id:
            raise ValidationError("session_id is required")
        if interval <= 0:
            raise ValidationError(
                "interval must be > 0", context={"session_id": session_id}
            )
        if not callable(callback):
            raise ValidationError("callback must be callable")

        session = PollingSession(
            session_id=session_id,
            device_ids=_unique(device_ids),
            interval=float(interval),
            callback=callback,
            priority=Priority.parse(priority),
        )
        replaced = session_id in self._sessions
        self._sessions[session_id] = session

        logger.info(
            "Session registered",
            session_id=session_id,
            devices=len(session.device_ids),
            interval=session.interval,
            priority=session.priority.value,
            replaced=replaced,
        )
        self._ensure_loop()
        return session

    def unregister_session(self, session_id: str) -> bool:
        """Remove a session. Unknown ids are ignored."""
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False

        self.metrics.remove_session(session_id)
        logger.info("Session unregistered", session_id=session_id)

        if not self._sessions and self._loop_task:
            self._loop_task.cancel()
            self._loop_task = None
            logger.info("No sessions left, master polling stopped")
        return True

    def update_session(
        self,
        session_id: str,
        device_ids: Iterable[Any] | None = None,
        interval: float | None = None,
        priority: Priority | str | None = None,
        callback: SessionCallback | None = None,
    ) -> PollingSession:
        """Change a session's devices, cadence or priority in place."""
        session = self.get_session(session_id)

        if interval is not None:
            if interval <= 0:
                raise ValidationError("interval must be > 0")
            session.interval = float(interval)
        if device_ids is not None:
            session.device_ids = _unique(device_ids)
        if priority is not None:
            session.priority = Priority.parse(priority)
        if callback is not None:
            session.callback = callback

        logger.debug(
            "Session updated",
            session_id=session_id,
            devices=len(session.device_ids),
            interval=session.interval,
        )
        return session

    async def force_poll(self, session_id: str) -> PollingUpdate:
        """Poll one session right now, outside its cadence."""
        if self._emergency_stopped:
            raise EmergencyStopError("Polling is emergency stopped")
        session = self.get_session(session_id)
        logger.info("Force polling session", session_id=session_id)
        updates = await self._poll_sessions([session])
        return updates[session_id]

    def register_user_activity(
        self,
        user_id: str,
        vehicle_ids: Iterable[Any],
        is_viewing_real_time: bool = False,
    ) -> UserActivity:
        if not user_id:
            raise ValidationError("user_id is required")
        activity = UserActivity(
            user_id=user_id,
            vehicle_ids=set(_unique(vehicle_ids)),
            is_viewing_real_time=is_viewing_real_time,
            registered_at=self._clock(),
        )
        self._user_activity[user_id] = activity
        logger.debug(
            "User activity registered",
            user_id=user_id,
            vehicles=len(activity.vehicle_ids),
            real_time=is_viewing_real_time,
        )
        return activity

    def unregister_user_activity(self, user_id: str) -> bool:
        return self._user_activity.pop(user_id, None) is not None

    def _realtime_vehicles(self) -> set[str]:
        vehicles: set[str] = set()
        for activity in self._user_activity.values():
            if activity.is_viewing_real_time:
                vehicles |= activity.vehicle_ids
        return vehicles

    def _has_realtime_viewer(self, session: PollingSession) -> bool:
        watched = self._realtime_vehicles()
        return any(device_id in watched for device_id in session.device_ids)

    def effective_priority(self, session: PollingSession) -> Priority:
        if self._has_realtime_viewer(session):
            return Priority.HIGH
        return session.priority

    def effective_interval(self, session: PollingSession) -> float:
        if self._has_realtime_viewer(session):
            return min(session.interval, self.config.realtime_interval)
        if session.priority == Priority.HIGH:
            return session.interval
        if self.smart_polling.config.adaptive_intervals:
            return max(session.interval, self.smart_polling.current_interval)
        return session.interval

    def _classify(self, session: PollingSession) -> str:
        interval = self.effective_interval(session)
        if interval <= FOCUSED_INTERVAL or self.effective_priority(session) == Priority.HIGH:
            return "focused"
        if interval <= ACTIVE_INTERVAL:
            return "active"
        return "background"

    def get_polling_hierarchy(self) -> dict[str, int]:
        hierarchy = {"focused": 0, "active": 0, "background": 0}
        for session in self._sessions.values():
            hierarchy[self._classify(session)] += 1
        return hierarchy

    def master_interval(self) -> float:
        hierarchy = self.get_polling_hierarchy()
        for level in ("focused", "active", "background"):
            if hierarchy[level]:
                return MASTER_TICKS[level]
        return MASTER_TICKS["idle"]

    def _due_sessions(self, now: float) -> list[PollingSession]:
        return [
            session
            for session in self._sessions.values()
            if session.last_poll is None
            or now - session.last_poll >= self.effective_interval(session)
        ]

    def _ensure_loop(self, force: bool = False) -> None:
        if not (force or self.auto_start):
            return
        if self._emergency_stopped or self.is_polling or not self._sessions:
            return
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            # Started later by start()
            return
        self._loop_task = asyncio.create_task(self._master_loop())
        logger.info("Master polling started")

    async def start(self) -> None:
        self._ensure_loop(force=True)

    async def stop(self) -> None:
        if self._loop_task:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None
        logger.info("Master polling stopped")

    async def _master_loop(self) -> None:
        while True:
            try:
                await self.poll_once()
                await self._sleep(self.master_interval())
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Master polling tick failed", error=str(e))
                await self._sleep(self.master_interval())

    async def poll_once(self) -> int:
        """
        Run one master tick.

        Returns:
            Number of sessions polled
        """
        if self._emergency_stopped or not self._sessions:
            return 0

        health = self.request_manager.get_health_status()
        if health["circuit_open"]:
            logger.info(
                "Circuit breaker open, skipping poll",
                reset_in=health["circuit_reset_in"],
            )
            return 0

        await self._refresh_devices_if_due()

        due = self._due_sessions(self._clock())
        if not due:
            return 0

        await self._poll_sessions(due)
        return len(due)

    async def _refresh_devices_if_due(self) -> None:
        if not self.config.username:
            return
        now = self._clock()
        if (
            self._last_devices_fetch is not None
            and now - self._last_devices_fetch < self.config.device_refresh_interval
        ):
            return

        self._last_devices_fetch = now
        username = self.config.username
        try:
            devices = await self.request_manager.queue_request(
                lambda: self.coordinator_client.get_device_list(username),
                priority=Priority.LOW,
                retries=1,
            )
        except Exception as e:
            logger.warning("Failed to refresh device list", error=str(e))
            return

        self.cached_devices = devices
        for device in devices:
            device_id = device.get("deviceid")
            if device_id is None:
                continue
            last_active = _to_epoch_seconds(device.get("lastactivetime"))
            if last_active is not None:
                key = str(device_id)
                self.activity_map[key] = max(last_active, self.activity_map.get(key, 0.0))

        logger.info("Refreshed device list", devices=len(devices))
        if self.events:
            self.events.vehicles.publish({"devices": devices})

    async def _poll_sessions(
        self, sessions: list[PollingSession]
    ) -> dict[str, PollingUpdate]:
        self._cycle_counter += 1
        self.metrics.start_cycle(f"cycle_{self._cycle_counter}")

        device_ids = _unique(d for session in sessions for d in session.device_ids)
        query_times = [s.last_query_time for s in sessions]
        last_query_time = (
            None if any(t is None for t in query_times) else min(query_times)
        )
        newest_query_time: list[Any] = []

        for session in sessions:
            session.state = SessionState.POLLING

        async def poll_fn(ids: list[str]) -> list[dict[str, Any]]:
            started = self._clock()
            try:
                result = await self.coordinator_client.get_last_positions(
                    ids, last_query_time
                )
            except Exception:
                self.metrics.record_call(self._clock() - started, False, devices=len(ids))
                raise
            self.metrics.record_call(
                self._clock() - started,
                True,
                positions=len(result.positions),
                devices=len(ids),
            )
            if result.last_query_time is not None:
                newest_query_time.append(result.last_query_time)
            return result.positions

        started = self._clock()
        results = []
        if device_ids:
            batches = self.smart_polling.create_device_batches(
                device_ids,
                self.activity_map,
                high_priority_ids=self._realtime_vehicles(),
            )
            results = await self.smart_polling.execute_batched_polling(batches, poll_fn)
        latency = self._clock() - started

        positions: list[dict[str, Any]] = [p for r in results for p in r.data]
        failed = [r for r in results if r.error]
        failed_devices: dict[str, str] = {
            device_id: r.error for r in failed for device_id in r.batch.device_ids
        }
        query_time = max(newest_query_time) if newest_query_time else last_query_time

        self._record_activity(positions)
        self.smart_polling.calculate_adaptive_interval(bool(positions))
        if positions and self.events:
            self.events.positions.publish(positions)

        updates: dict[str, PollingUpdate] = {}
        now = self._clock()
        for session in sessions:
            wanted = set(session.device_ids)
            # A failed batch must not move the incremental cursor past updates
            # its devices have not delivered yet
            session_errors = list(
                dict.fromkeys(
                    failed_devices[d] for d in session.device_ids if d in failed_devices
                )
            )
            error = "; ".join(session_errors) if session_errors else None
            if error is None:
                session.last_query_time = query_time

            update = PollingUpdate(
                session_id=session.session_id,
                positions=[p for p in positions if str(p.get("deviceid")) in wanted],
                devices=self.cached_devices,
                last_query_time=session.last_query_time,
                error=error,
            )
            updates[session.session_id] = update

            session.state = SessionState.REGISTERED
            session.last_poll = now
            session.poll_count += 1
            session.error = error

            self.metrics.record_session_poll(
                session.session_id, latency, len(update.positions), error
            )
            if session.session_id in self._sessions:
                await self._deliver(session, update)

        self.metrics.end_cycle()
        logger.debug(
            "Poll cycle completed",
            sessions=len(sessions),
            devices=len(device_ids),
            positions=len(positions),
            failed_batches=len(failed),
        )
        return updates

    def _record_activity(self, positions: list[dict[str, Any]]) -> None:
        for position in positions:
            device_id = position.get("deviceid")
            if device_id is None:
                continue
            seen = _to_epoch_seconds(position.get("updatetime")) or self._wall_clock()
            key = str(device_id)
            self.activity_map[key] = max(seen, self.activity_map.get(key, 0.0))

    async def _deliver(self, session: PollingSession, update: PollingUpdate) -> None:
        try:
            result = session.callback(update)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(
                "Session callback failed", session_id=session.session_id, error=str(e)
            )

    def emergency_stop(self, reason: str = "Emergency stop activated") -> None:
        """Halt all polling and mark every session with the stop reason."""
        self._emergency_stopped = True
        if self._loop_task:
            self._loop_task.cancel()
            self._loop_task = None
        self.request_manager.pause_all_requests()
        for session in self._sessions.values():
            session.state = SessionState.REGISTERED
            session.error = reason
        logger.critical("Emergency stop activated", reason=reason, sessions=len(self._sessions))

    def resume(self) -> None:
        """Lift an emergency stop and restart polling."""
        if not self._emergency_stopped:
            return
        self._emergency_stopped = False
        self.request_manager.resume_requests()
        for session in self._sessions.values():
            session.error = None
        logger.info("Polling resumed after emergency stop")
        self._ensure_loop()

    def _active_vehicle_count(self) -> int:
        return len(
            {d for session in self._sessions.values() for d in session.device_ids}
        )

    def get_unified_metrics(self) -> dict[str, Any]:
        """Aggregate session, request manager and coordinator health. Never raises."""
        try:
            summary = self.metrics.get_global_summary()
            health = self.request_manager.get_health_status()
            coordinator = self.coordinator_client.get_status()
            circuit_open = bool(health.get("circuit_open"))
            coordinator_stopped = bool(coordinator.get("emergency_stop"))
            error_rate = summary["error_rate"]

            if (
                circuit_open
                or coordinator_stopped
                or self._emergency_stopped
                or error_rate > 0.2
            ):
                risk_level = "high"
            elif error_rate > 0.1:
                risk_level = "medium"
            else:
                risk_level = "low"

            return {
                "total_calls": summary["total_calls"],
                "successful_calls": summary["successful_calls"],
                "failed_calls": summary["failed_calls"],
                "success_rate": summary["success_rate"],
                "average_latency": summary["performance"]["avg_latency"],
                "active_polling_vehicles": self._active_vehicle_count(),
                "active_sessions": len(self._sessions),
                "circuit_breaker": "open" if circuit_open else "closed",
                "emergency_stop": self._emergency_stopped or coordinator_stopped,
                "risk_level": risk_level,
                "request_manager": health,
                "coordinator": coordinator,
            }
        except Exception as e:
            logger.error("Failed to build unified metrics", error=str(e))
            return {
                "total_calls": 0,
                "successful_calls": 0,
                "failed_calls": 0,
                "success_rate": 0.0,
                "average_latency": 0.0,
                "active_polling_vehicles": 0,
                "active_sessions": len(self._sessions),
                "circuit_breaker": "unknown",
                "emergency_stop": self._emergency_stopped,
                "risk_level": "high",
                "error": str(e),
            }

    def get_status(self) -> dict[str, Any]:
        return {
            "is_polling": self.is_polling,
            "session_count": len(self._sessions),
            "hierarchy": self.get_polling_hierarchy(),
            "master_interval": self.master_interval(),
            "last_devices_fetch": self._last_devices_fetch,
            "cached_devices_count": len(self.cached_devices),
            "user_activity_count": len(self._user_activity),
            "emergency_stopped": self._emergency_stopped,
        }
